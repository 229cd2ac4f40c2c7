"""
Config mode selection.

Chooses exactly one proxy configuration variant at process start from
the deployment stage and the presence of the certificate bundle, and
writes the rendered variant to the file the serving process reads.
"""

import contextlib
import logging
import os
import tempfile
from pathlib import Path

from certwatch.config import get_domains, get_stage, get_store_base, settings
from certwatch.core.cert_store import CertificateStore, FilesystemCertificateStore
from certwatch.core.config_generator import ConfigGenerator, ConfigGeneratorError, get_config_generator
from certwatch.models.proxy import ConfigMode, DeploymentStage

logger = logging.getLogger(__name__)


def select_mode(stage: DeploymentStage, cert_present: bool) -> ConfigMode:
    """
    Decision table:

    | stage      | cert+key present | mode           |
    |------------|------------------|----------------|
    | dev        | any              | HTTP_ONLY      |
    | production | yes              | TLS_ACTIVE     |
    | production | no               | ACME_BOOTSTRAP |
    """
    if stage is not DeploymentStage.PRODUCTION:
        return ConfigMode.HTTP_ONLY
    return ConfigMode.TLS_ACTIVE if cert_present else ConfigMode.ACME_BOOTSTRAP


def _discard(path: str) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.unlink(path)


class ActiveConfigError(ConfigGeneratorError):
    """The active configuration file cannot be read or written."""
    pass


class ActiveConfig:
    """The configuration file read by the serving process; replaced atomically."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def read(self) -> str | None:
        try:
            return self.path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ActiveConfigError(f"Cannot read {self.path}: {e}")

    def write(self, content: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        except OSError as e:
            raise ActiveConfigError(f"Cannot write {self.path}: {e}. Check NGINX_ACTIVE_CONF and its permissions")

        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(content)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.path)
        except OSError as e:
            _discard(tmp_path)
            raise ActiveConfigError(f"Cannot write {self.path}: {e}")
        except BaseException:
            _discard(tmp_path)
            raise

    def swap(self, content: str) -> str | None:
        """Replace the file and return the previous content for rollback."""
        previous = self.read()
        self.write(content)
        return previous

    def restore(self, previous: str | None) -> None:
        if previous is None:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise ActiveConfigError(f"Cannot remove {self.path}: {e}")
        else:
            self.write(previous)


class ModeSelector:
    """Select and materialize the configuration variant once per process."""

    def __init__(
        self,
        store: CertificateStore,
        generator: ConfigGenerator,
        active_config: ActiveConfig,
        domain: str,
        stage: DeploymentStage,
    ):
        self.store = store
        self.generator = generator
        self.active_config = active_config
        self.domain = domain
        self.stage = stage

    def select(self) -> ConfigMode:
        cert_present = self.store.bundle_exists(self.domain)
        mode = select_mode(self.stage, cert_present)

        if mode is ConfigMode.TLS_ACTIVE:
            logger.info("SSL certificates found. Configuring Nginx for HTTPS.")
        elif mode is ConfigMode.ACME_BOOTSTRAP:
            logger.info("SSL certificates not found. Configuring Nginx for ACME challenge.")
        else:
            logger.info("Configuring Nginx for HTTP (development).")
        return mode

    def materialize(self, mode: ConfigMode) -> Path:
        """Render the variant and write it to the active configuration path."""
        config = self.generator.generate(mode)
        self.active_config.write(config)
        logger.info(f"Wrote {mode.value} configuration to {self.active_config.path}")
        return self.active_config.path

    def select_and_materialize(self) -> ConfigMode:
        mode = self.select()
        self.materialize(mode)
        return mode


def get_mode_selector(store: CertificateStore | None = None) -> ModeSelector:
    """Build the selector from settings."""
    store = store or FilesystemCertificateStore(get_store_base())
    domain = get_domains()[0]
    fullchain, privkey = store.bundle_paths(domain)
    return ModeSelector(
        store=store,
        generator=get_config_generator(str(fullchain), str(privkey)),
        active_config=ActiveConfig(settings.nginx_active_conf),
        domain=domain,
        stage=get_stage(),
    )
