"""
In-memory certificate store.

Same contract as the filesystem store, without touching disk. Writes
notify every subscriber of the domain the way a move-into-place would.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable

from certwatch.core.cert_store import FULLCHAIN_NAME, PRIVKEY_NAME, CertificateStore, build_bundle
from certwatch.models.certificate import BundleEvent, BundleEventType, CertificateBundle


class InMemoryCertificateStore(CertificateStore):
    """Certificate store held in a dict, keyed by domain."""

    def __init__(self, base_dir: Path | str = "/memory", clock: Callable[[], float] = time.time):
        self.base_dir = Path(base_dir)
        self._clock = clock
        self._bundles: dict[str, tuple[bytes, bytes, float]] = {}
        self._subscribers: dict[str, list[asyncio.Queue]] = {}
        self.writes = 0

    def bundle_paths(self, domain: str) -> tuple[Path, Path]:
        return self.base_dir / domain / FULLCHAIN_NAME, self.base_dir / domain / PRIVKEY_NAME

    def bundle_exists(self, domain: str) -> bool:
        return domain in self._bundles

    def modified_at(self, domain: str) -> float | None:
        entry = self._bundles.get(domain)
        return entry[2] if entry else None

    def read_bundle(self, domain: str) -> CertificateBundle | None:
        entry = self._bundles.get(domain)
        if entry is None:
            return None
        fullchain_pem, _, modified_at = entry
        fullchain, privkey = self.bundle_paths(domain)
        return build_bundle(domain, fullchain, privkey, fullchain_pem, modified_at)

    def write_bundle(self, domain: str, fullchain_pem: bytes, privkey_pem: bytes) -> None:
        previous = self.modified_at(domain)
        modified_at = self._clock()
        # Keep mtimes strictly increasing even with a coarse clock
        if previous is not None and modified_at <= previous:
            modified_at = previous + 1
        self._bundles[domain] = (fullchain_pem, privkey_pem, modified_at)
        self.writes += 1
        self.emit_event(domain, BundleEventType.MOVED)

    def remove_bundle(self, domain: str) -> None:
        self._bundles.pop(domain, None)

    def emit_event(self, domain: str, event_type: BundleEventType = BundleEventType.CLOSED) -> None:
        """Deliver a notification without changing the bundle."""
        fullchain, _ = self.bundle_paths(domain)
        event = BundleEvent(domain=domain, event_type=event_type, path=str(fullchain))
        for queue in self._subscribers.get(domain, []):
            queue.put_nowait(event)

    @asynccontextmanager
    async def watch_bundle(self, domain: str) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(domain, []).append(queue)
        try:
            yield queue
        finally:
            self._subscribers[domain].remove(queue)
