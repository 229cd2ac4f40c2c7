"""
Certificate models for the shared certificate store.

Provides Pydantic models for certificate bundles and the results of
lifecycle operations, plus the lifecycle and error enumerations.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class LifecycleState(str, Enum):
    """Certificate lifecycle state as seen by the certificate process."""
    NO_CERT = "no_cert"             # No bundle in the store
    ACQUIRING = "acquiring"         # Initial request in progress
    VALID = "valid"                 # Bundle present and outside the renewal window
    RENEWAL_DUE = "renewal_due"     # Bundle within the renewal window
    RENEWING = "renewing"           # Renewal in progress

    @property
    def is_stable(self) -> bool:
        return self in (LifecycleState.NO_CERT, LifecycleState.VALID)


class AcmeErrorClass(str, Enum):
    """Cause class of a failed ACME operation."""
    DNS = "dns"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    PERMISSION = "permission"
    UNKNOWN = "unknown"


class BundleEventType(str, Enum):
    """Filesystem notification kinds relevant to a bundle."""
    CLOSED = "closed"       # Write-close on the certificate file
    MOVED = "moved"         # Certificate moved (or symlink swapped) into place
    CREATED = "created"     # Certificate (or certbot's live symlink) created
    DELETED = "deleted"     # Certificate removed, possibly mid symlink swap


class BundleEvent(BaseModel):
    """A change notification for the certificate file of a domain."""
    domain: str
    event_type: BundleEventType
    path: str


class CertificateBundle(BaseModel):
    """
    Certificate chain and private key pair for a domain.

    Created by a successful acquisition and overwritten in place by renewals.
    """
    domain: str = Field(..., description="Primary domain of the bundle")
    fullchain_path: str = Field(..., description="Path to fullchain.pem")
    privkey_path: str = Field(..., description="Path to privkey.pem")
    not_before: datetime = Field(..., description="Certificate valid from")
    not_after: datetime = Field(..., description="Certificate expiry date")
    modified_at: float = Field(..., description="Modification time of the certificate file")

    issuer: Optional[str] = Field(None, description="Certificate issuer (CA)")
    serial_number: Optional[str] = Field(None, description="Certificate serial number")
    alt_names: List[str] = Field(default_factory=list, description="Subject Alternative Names (SANs)")
    fingerprint_sha256: Optional[str] = Field(None, description="SHA-256 fingerprint of the certificate")

    def time_until_expiry(self, now: Optional[datetime] = None) -> timedelta:
        """Remaining validity; negative once expired."""
        now = now or datetime.now(timezone.utc)
        not_after = self.not_after
        if not_after.tzinfo is None:
            not_after = not_after.replace(tzinfo=timezone.utc)
        return not_after - now

    def days_until_expiry(self, now: Optional[datetime] = None) -> int:
        return self.time_until_expiry(now).days

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.time_until_expiry(now) <= timedelta(0)


def needs_renewal(bundle: CertificateBundle, threshold: timedelta, now: Optional[datetime] = None) -> bool:
    """Renewal is due when the remaining validity is below the threshold."""
    return bundle.time_until_expiry(now) < threshold


class TickResult(BaseModel):
    """Outcome of one lifecycle check."""
    state: LifecycleState = Field(..., description="State after the check")
    attempted: bool = Field(default=False, description="Whether the ACME client was invoked")
    succeeded: bool = Field(default=False, description="Whether the ACME invocation succeeded")
    renewed: bool = Field(
        default=False, description="Whether the bundle changed during the check (observability only)"
    )
    error_class: Optional[AcmeErrorClass] = Field(None, description="Cause class of a failure")
    message: Optional[str] = Field(None, description="Failure message")
