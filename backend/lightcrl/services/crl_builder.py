"""Assembles unsigned CRLs.

The builder decides whether a CA is due for a new CRL, collects its revoked
certificates and lays out the ``TBSCertList`` that the signer turns into the
final artifact. Encoding follows RFC 5280 section 5 via asn1crypto.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from asn1crypto import algos, core
from asn1crypto import crl as asn1_crl
from asn1crypto import x509 as asn1_x509
from sqlalchemy import func
from sqlalchemy.orm import Session

from lightcrl.errors import ConfigurationError, NotFoundError
from lightcrl.models.certificate import Certificate
from lightcrl.models.crl import CRL, CRLNumberSequence, RevocationReason
from lightcrl.schemas.crl import CRLGenerationRequest, RevokedEntry
from lightcrl.schemas.crl_settings import CRLConfig, SecurityOptions
from lightcrl.services import crypto_service
from lightcrl.services.collaborators import EngineContext
from lightcrl.services.crl_store import get_active_crl

log = logging.getLogger(__name__)

# GeneralizedTime is required for dates in 2050 or later
_UTC_TIME_LIMIT = 2050


@dataclass
class UnsignedCRL:
    ca_id: int
    crl_number: int
    issuer: str
    issuer_der: bytes
    authority_key_id: bytes
    this_update: datetime
    next_update: datetime
    entries: List[RevokedEntry]
    security: SecurityOptions
    trigger_reason: str = "manual"
    generated_by: str = "system"
    distribution_point_ids: List[int] = field(default_factory=list)

    @property
    def distribution_points_json(self) -> str:
        return json.dumps(self.distribution_point_ids)


@dataclass
class BuildOutcome:
    config: CRLConfig
    due: bool
    message: str
    crl: Optional[UnsignedCRL] = None


def check_config(config: CRLConfig) -> None:
    if not config.enabled:
        raise ConfigurationError(f"CRL generation is disabled for CA {config.ca_id}")
    if config.validity_hours <= 0:
        raise ConfigurationError(f"CA {config.ca_id}: validity_hours must be positive")
    if config.overlap_hours < 0 or config.overlap_hours >= config.validity_hours:
        raise ConfigurationError(
            f"CA {config.ca_id}: overlap_hours must be between 0 and validity_hours"
        )


def due_at(active: Optional[CRL], overlap_hours: int) -> Optional[datetime]:
    """When the successor of ``active`` must be generated; None if no active CRL."""
    if active is None:
        return None
    return active.next_update - timedelta(hours=overlap_hours)


def is_generation_due(active: Optional[CRL], overlap_hours: int, now: datetime, force: bool = False) -> bool:
    if force or active is None:
        return True
    return now >= due_at(active, overlap_hours)


def next_crl_number(db: Session, ca_id: int) -> int:
    """Highest number ever stored for the CA + 1.

    The per-CA sequence row outlives cleanup of old CRLs, so numbers are never
    reused. Failed attempts persist nothing and consume no number.
    """
    issued = db.query(CRLNumberSequence.last_number).filter(CRLNumberSequence.ca_id == ca_id).scalar()
    current = db.query(func.max(CRL.crl_number)).filter(CRL.ca_id == ca_id).scalar()
    return max(issued or 0, current or 0) + 1


def _dedupe_entries(entries: List[RevokedEntry]) -> List[RevokedEntry]:
    by_serial = {}
    for entry in entries:
        known = by_serial.get(entry.serial_number)
        # keep the earliest revocation if the source reports a serial twice
        if known is None or entry.revocation_date < known.revocation_date:
            by_serial[entry.serial_number] = entry
    return [by_serial[serial] for serial in sorted(by_serial)]


def build_crl(db: Session, request: CRLGenerationRequest, ctx: EngineContext, now: datetime) -> BuildOutcome:
    """Decide whether ``request`` needs a new CRL and, if so, lay it out.

    Raises ConfigurationError when the CA's CRL feature is disabled and
    NotFoundError for an unknown CA.
    """
    config = ctx.config_factory(db).get_config(request.ca_id)
    check_config(config)

    active = get_active_crl(db, request.ca_id)
    if not is_generation_due(active, config.overlap_hours, now, request.force_regeneration):
        return BuildOutcome(
            config=config,
            due=False,
            message=(
                f"CRL #{active.crl_number} for CA {request.ca_id} is current; "
                f"next generation due at {due_at(active, config.overlap_hours).isoformat()}"
            ),
        )

    ca = db.query(Certificate).filter(Certificate.id == request.ca_id).first()
    if ca is None:
        raise NotFoundError(f"CA {request.ca_id} not found")
    ca_cert = crypto_service.load_certificate(ca.certificate_der)

    include_expired = config.include_expired if request.include_expired is None else request.include_expired
    entries = _dedupe_entries(
        ctx.revocation_factory(db).get_revoked_certificates(request.ca_id, include_expired)
    )

    this_update = now.replace(microsecond=0)
    validity_hours = request.custom_validity_hours or config.validity_hours
    unsigned = UnsignedCRL(
        ca_id=request.ca_id,
        crl_number=next_crl_number(db, request.ca_id),
        issuer=ca_cert.subject.rfc4514_string(),
        issuer_der=ca_cert.subject.public_bytes(),
        authority_key_id=crypto_service.key_identifier(ca_cert.public_key()),
        this_update=this_update,
        next_update=this_update + timedelta(hours=validity_hours),
        entries=entries,
        security=config.security,
        trigger_reason=request.reason,
        generated_by=request.requested_by,
        distribution_point_ids=[p.id for p in config.enabled_points],
    )
    log.debug(
        "Built CRL #%d for CA %s with %d entries", unsigned.crl_number, request.ca_id, len(entries)
    )
    return BuildOutcome(config=config, due=True, message="CRL built", crl=unsigned)


# ============================================
# DER layout
# ============================================


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def asn1_time(value: datetime) -> asn1_x509.Time:
    value = _as_utc(value)
    if value.year >= _UTC_TIME_LIMIT:
        return asn1_x509.Time({"general_time": value})
    return asn1_x509.Time({"utc_time": value})


def algorithm_identifier(algorithm: str) -> algos.SignedDigestAlgorithm:
    identifier = {"algorithm": algorithm}
    if algorithm.endswith("_rsa"):
        identifier["parameters"] = core.Null()
    return algos.SignedDigestAlgorithm(identifier)


def _revoked_certificate(entry: RevokedEntry) -> asn1_crl.RevokedCertificate:
    value = {
        "user_certificate": entry.serial_number,
        "revocation_date": asn1_time(entry.revocation_date),
    }
    if entry.reason != RevocationReason.UNSPECIFIED:
        value["crl_entry_extensions"] = [
            {
                "extn_id": "crl_reason",
                "critical": False,
                "extn_value": asn1_crl.CRLReason(entry.reason.value),
            }
        ]
    return asn1_crl.RevokedCertificate(value)


def encode_tbs(unsigned: UnsignedCRL, algorithm: str) -> asn1_crl.TbsCertList:
    """The canonical signable payload is ``encode_tbs(...).dump()``."""
    tbs = {
        "version": "v2",
        "signature": algorithm_identifier(algorithm),
        "issuer": asn1_x509.Name.load(unsigned.issuer_der),
        "this_update": asn1_time(unsigned.this_update),
        "next_update": asn1_time(unsigned.next_update),
    }
    if unsigned.entries:
        tbs["revoked_certificates"] = [_revoked_certificate(e) for e in unsigned.entries]
    if unsigned.security.include_extensions:
        tbs["crl_extensions"] = [
            {"extn_id": "crl_number", "critical": False, "extn_value": unsigned.crl_number},
            {
                "extn_id": "authority_key_identifier",
                "critical": False,
                "extn_value": asn1_x509.AuthorityKeyIdentifier(
                    {"key_identifier": unsigned.authority_key_id}
                ),
            },
        ]
    return asn1_crl.TbsCertList(tbs)
