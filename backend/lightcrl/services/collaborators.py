"""Interfaces the CRL engine consumes, and their default adapters.

The engine only talks to these narrow interfaces: a configuration provider,
a revocation source, a signing authority, a publisher and a notifier. The
defaults here read the LightCRL database, sign with keys held under the master
key, publish over HTTP and log notifications; tests and deployments swap any of
them through :class:`EngineContext`.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy.orm import Session

from lightcrl.config import settings
from lightcrl.errors import NotFoundError, SigningError
from lightcrl.models.certificate import CA_TYPES, Certificate, CertificateStatus
from lightcrl.models.crl import RevocationReason
from lightcrl.models.distribution import CRLDistributionPoint
from lightcrl.models.settings import CRLConfiguration
from lightcrl.schemas.crl import RevokedEntry
from lightcrl.schemas.crl_settings import (
    CRLConfig,
    DistributionPointConfig,
    NotificationOptions,
    SecurityOptions,
)
from lightcrl.security import decrypt_key_password, decrypt_private_key
from lightcrl.services import crypto_service

log = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC, the way timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================
# Interfaces
# ============================================


class ConfigProvider(Protocol):
    def get_config(self, ca_id: int) -> CRLConfig: ...

    def list_ca_ids(self) -> List[int]: ...


class RevocationSource(Protocol):
    def get_revoked_certificates(self, ca_id: int, include_expired: bool) -> List[RevokedEntry]: ...


@dataclass(frozen=True)
class SignatureResult:
    algorithm: str
    signature: bytes


class SigningAuthority(Protocol):
    """Signs on behalf of a CA without exposing its key.

    ``signature_algorithm`` is asked first because the algorithm identifier is
    part of the signed payload.
    """

    def signature_algorithm(self, ca_id: int) -> str: ...

    def sign(self, payload: bytes, ca_id: int) -> SignatureResult: ...


@dataclass
class PublishResponse:
    status_code: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class Publisher(Protocol):
    def publish(self, url: str, data: bytes, timeout: float) -> PublishResponse: ...

    def probe(self, url: str, timeout: float) -> PublishResponse: ...


class Notifier(Protocol):
    def notify(self, event: str, payload: Dict[str, Any]) -> None: ...


# ============================================
# Default adapters
# ============================================


class DatabaseConfigProvider:
    def __init__(self, db: Session):
        self.db = db

    def list_ca_ids(self) -> List[int]:
        rows = (
            self.db.query(Certificate.id)
            .filter(Certificate.is_deleted == False, Certificate.type.in_(CA_TYPES))
            .order_by(Certificate.id)
            .all()
        )
        return [row.id for row in rows]

    def get_config(self, ca_id: int) -> CRLConfig:
        ca = self.db.query(Certificate).filter(Certificate.id == ca_id, Certificate.is_deleted == False).first()
        if ca is None or not ca.is_ca:
            raise NotFoundError(f"CA {ca_id} not found")

        points = (
            self.db.query(CRLDistributionPoint)
            .filter(CRLDistributionPoint.ca_id == ca_id)
            .order_by(CRLDistributionPoint.priority, CRLDistributionPoint.id)
            .all()
        )
        point_configs = [DistributionPointConfig.model_validate(p) for p in points]

        row = self.db.query(CRLConfiguration).filter(CRLConfiguration.ca_id == ca_id).first()
        if row is None:
            return CRLConfig(
                ca_id=ca_id,
                validity_hours=settings.CRL_VALIDITY_HOURS,
                overlap_hours=settings.CRL_OVERLAP_HOURS,
                include_expired=settings.CRL_INCLUDE_EXPIRED,
                distribution_points=point_configs,
                security=SecurityOptions(
                    sign_crl=settings.CRL_SIGN,
                    include_issuer=settings.CRL_INCLUDE_ISSUER,
                    include_extensions=settings.CRL_INCLUDE_EXTENSIONS,
                ),
            )

        return CRLConfig(
            ca_id=ca_id,
            enabled=row.enabled,
            auto_generate=row.auto_generate,
            validity_hours=row.validity_hours,
            overlap_hours=row.overlap_hours,
            include_expired=row.include_expired,
            distribution_points=point_configs,
            security=SecurityOptions(
                sign_crl=row.sign_crl,
                include_issuer=row.include_issuer,
                include_extensions=row.include_extensions,
            ),
            notifications=NotificationOptions(
                notify_on_generation=row.notify_on_generation,
                notify_on_failure=row.notify_on_failure,
                notify_on_distribution_failure=row.notify_on_distribution_failure,
            ),
        )


class DatabaseRevocationSource:
    """Revoked leaf certificates issued directly by the CA."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def get_revoked_certificates(self, ca_id: int, include_expired: bool) -> List[RevokedEntry]:
        query = self.db.query(Certificate).filter(
            Certificate.parent_id == ca_id,
            Certificate.status == CertificateStatus.REVOKED,
            Certificate.is_deleted == False,
        )
        if not include_expired:
            query = query.filter(Certificate.not_after > self.clock())

        entries = []
        for cert in query.all():
            reason = cert.metadata_dict.get("revocation_reason", "unspecified")
            try:
                reason = RevocationReason(reason)
            except ValueError:
                log.warning(
                    "Unknown revocation reason %r on certificate %s, using unspecified", reason, cert.id
                )
                reason = RevocationReason.UNSPECIFIED
            entries.append(
                RevokedEntry(
                    serial_number=crypto_service.parse_hex_serial(cert.serial_number),
                    revocation_date=cert.revoked_at or cert.created_at,
                    reason=reason,
                )
            )
        return entries


class KeyStoreSigner:
    """Signs with the CA key kept encrypted in the ``keys`` table."""

    def __init__(self, db: Session):
        self.db = db
        self._keys: Dict[int, Any] = {}

    def _private_key(self, ca_id: int):
        if ca_id in self._keys:
            return self._keys[ca_id]

        ca = self.db.query(Certificate).filter(Certificate.id == ca_id).first()
        if ca is None or ca.key is None or ca.key.is_deleted:
            raise SigningError(f"No signing key available for CA {ca_id}")

        key = ca.key
        try:
            password = decrypt_key_password(key.encrypted_password) if key.encrypted_password else None
            pem = decrypt_private_key(key.encrypted_pem, password)
            private_key = crypto_service.load_private_key_pem(pem)
        except Exception as exc:
            raise SigningError(f"Unable to unlock signing key for CA {ca_id}: {exc}") from exc

        self._keys[ca_id] = private_key
        return private_key

    def signature_algorithm(self, ca_id: int) -> str:
        try:
            return crypto_service.signature_algorithm_for_key(self._private_key(ca_id))
        except ValueError as exc:
            raise SigningError(str(exc)) from exc

    def sign(self, payload: bytes, ca_id: int) -> SignatureResult:
        algorithm = self.signature_algorithm(ca_id)
        try:
            signature = crypto_service.sign_payload(self._private_key(ca_id), payload, algorithm)
        except Exception as exc:
            raise SigningError(f"Signing failed for CA {ca_id}: {exc}") from exc
        return SignatureResult(algorithm=algorithm, signature=signature)


class LoggingNotifier:
    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        log.info("CRL event %s: %s", event, payload)


# ============================================
# Engine wiring
# ============================================


class CALockRegistry:
    """One mutex per CA, serialising CRL generation for that CA."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}

    def lock_for(self, ca_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(ca_id)
            if lock is None:
                lock = self._locks[ca_id] = threading.Lock()
            return lock

    def __len__(self) -> int:
        return len(self._locks)


def _default_publisher():
    from lightcrl.services.distribution import HttpPublisher

    return HttpPublisher()


@dataclass
class EngineContext:
    """Collaborators and shared state for one process.

    The ``*_factory`` callables receive the request's DB session, so
    database-backed adapters work inside the caller's transaction.
    """

    config_factory: Callable[[Session], ConfigProvider] = DatabaseConfigProvider
    revocation_factory: Callable[[Session], RevocationSource] = DatabaseRevocationSource
    signer_factory: Callable[[Session], SigningAuthority] = KeyStoreSigner
    publisher: Publisher = field(default_factory=_default_publisher)
    notifier: Notifier = field(default_factory=LoggingNotifier)
    locks: CALockRegistry = field(default_factory=CALockRegistry)
    clock: Callable[[], datetime] = utcnow
    publish_timeout: float = settings.CRL_PUBLISH_TIMEOUT_SECONDS
    publish_max_workers: int = settings.CRL_PUBLISH_MAX_WORKERS

    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        """Fire-and-forget: notifier failures are logged, never raised."""
        try:
            self.notifier.notify(event, payload)
        except Exception:
            log.exception("Notifier failed for event %s", event)
