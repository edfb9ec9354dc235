"""Structural, temporal and cryptographic checks on CRL artifacts.

Findings are returned as data: ``errors`` are fatal, ``warnings`` are not.
Every check runs, so a single call reports all defects at once.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from asn1crypto import crl as asn1_crl
from asn1crypto import pem
from asn1crypto import x509 as asn1_x509
from sqlalchemy.orm import Session

from lightcrl.errors import NotFoundError, ValidationError
from lightcrl.models.certificate import Certificate
from lightcrl.models.crl import CRL
from lightcrl.schemas.crl import CRLValidationResult
from lightcrl.schemas.crl_settings import SecurityOptions
from lightcrl.services import crypto_service
from lightcrl.services.collaborators import utcnow
from lightcrl.services.crl_builder import _as_utc
from lightcrl.services.crl_store import get_crl

log = logging.getLogger(__name__)


@dataclass
class _Expectations:
    include_issuer: bool
    include_extensions: bool
    is_signed: bool = True
    crl_number: Optional[int] = None


def _load_ca(db: Session, ca_id: int) -> Certificate:
    ca = db.query(Certificate).filter(Certificate.id == ca_id).first()
    if ca is None or not ca.is_ca:
        raise NotFoundError(f"CA {ca_id} not found")
    return ca


def parse_crl(data: bytes) -> asn1_crl.CertificateList:
    """Load PEM or DER bytes; raises ValidationError if they are not a CRL."""
    if not data:
        raise ValidationError("Empty CRL data")
    try:
        if pem.detect(data):
            _, _, data = pem.unarmor(data)
        cert_list = asn1_crl.CertificateList.load(data)
        # asn1crypto parses lazily; force it so malformed input fails here
        cert_list.native
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"Unable to parse CRL: {exc}") from exc
    return cert_list


def _check(
    cert_list: asn1_crl.CertificateList,
    ca: Certificate,
    expect: _Expectations,
    now: datetime,
) -> CRLValidationResult:
    errors = []
    warnings = []
    tbs = cert_list["tbs_cert_list"]
    now = _as_utc(now)

    ca_cert = crypto_service.load_certificate(ca.certificate_der)

    # signature
    signature = cert_list["signature"].native or b""
    algorithm = cert_list["signature_algorithm"]["algorithm"].native
    if not signature:
        errors.append("CRL signature is missing" if expect.is_signed else "CRL is not signed")
    else:
        if tbs["signature"]["algorithm"].native != algorithm:
            errors.append("Signature algorithm in TBSCertList does not match the outer algorithm")
        if not crypto_service.verify_signature(ca_cert.public_key(), signature, tbs.dump(), algorithm):
            errors.append("CRL signature does not verify against the issuer certificate")

    # validity window
    this_update = tbs["this_update"].native
    next_update = tbs["next_update"].native
    if this_update > now:
        errors.append("CRL thisUpdate is in the future")
    if next_update is None:
        errors.append("CRL has no nextUpdate")
    else:
        if next_update <= this_update:
            errors.append("CRL nextUpdate must be after thisUpdate")
        if next_update < now:
            warnings.append("CRL has expired")

    # entries
    revoked = tbs["revoked_certificates"]
    serials = [entry["user_certificate"].native for entry in revoked]
    duplicates = sorted(serial for serial, count in Counter(serials).items() if count > 1)
    if duplicates:
        errors.append(
            "Duplicate serial numbers: " + ", ".join(crypto_service.hex_serial(s) for s in duplicates)
        )
    future = [
        entry["user_certificate"].native for entry in revoked if entry["revocation_date"].native > now
    ]
    if future:
        warnings.append(f"{len(future)} entries have a revocation date in the future")

    # issuer
    if expect.include_issuer:
        expected_issuer = asn1_x509.Name.load(ca_cert.subject.public_bytes())
        if tbs["issuer"] != expected_issuer:
            errors.append("CRL issuer does not match the CA subject")

    # extensions
    if expect.include_extensions:
        crl_number = cert_list.crl_number_value
        if crl_number is None:
            errors.append("CRL Number extension is missing")
        elif expect.crl_number is not None and crl_number.native != expect.crl_number:
            errors.append(
                f"CRL Number extension ({crl_number.native}) does not match the record ({expect.crl_number})"
            )
        if cert_list.authority_key_identifier is None:
            errors.append("Authority Key Identifier extension is missing")
        elif cert_list.authority_key_identifier != crypto_service.key_identifier(ca_cert.public_key()):
            errors.append("Authority Key Identifier does not match the CA key")

    return CRLValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        details={
            "ca_id": ca.id,
            "issuer": tbs["issuer"].human_friendly,
            "this_update": this_update.isoformat(),
            "next_update": next_update.isoformat() if next_update else None,
            "entry_count": len(serials),
            "signature_algorithm": algorithm,
        },
    )


def _with_record(result: CRLValidationResult, crl: Optional[CRL]) -> CRLValidationResult:
    result.details["crl_id"] = crl.id if crl else None
    result.details["crl_number"] = crl.crl_number if crl else None
    result.details["status"] = crl.status.value if crl else None
    return result


def validate_crl(db: Session, crl_id: int, now: Optional[datetime] = None) -> CRLValidationResult:
    """Validate a stored CRL against its issuer; NotFoundError if unknown."""
    crl = get_crl(db, crl_id)
    ca = _load_ca(db, crl.ca_id)
    expect = _Expectations(
        include_issuer=crl.include_issuer,
        include_extensions=crl.include_extensions,
        is_signed=crl.is_signed,
        crl_number=crl.crl_number,
    )
    result = _check(parse_crl(crl.crl_der), ca, expect, now or utcnow())
    if not result.is_valid:
        log.warning("CRL %s (CA %s) failed validation: %s", crl.id, crl.ca_id, result.errors)
    return _with_record(result, crl)


def validate_crl_bytes(
    db: Session,
    ca_id: int,
    data: bytes,
    now: Optional[datetime] = None,
    security: Optional[SecurityOptions] = None,
) -> CRLValidationResult:
    """Validate PEM or DER bytes claimed to be issued by ``ca_id``.

    Bytes identical to a stored CRL are checked with the options that CRL
    was generated with; otherwise ``security`` (default: all on) applies.
    """
    ca = _load_ca(db, ca_id)
    cert_list = parse_crl(data)

    # matched on the exact encoding; CRLs built without extensions carry no number
    record = (
        db.query(CRL)
        .filter(CRL.ca_id == ca_id, CRL.crl_der == cert_list.dump())
        .order_by(CRL.id.desc())
        .first()
    )

    if record is not None:
        expect = _Expectations(
            include_issuer=record.include_issuer,
            include_extensions=record.include_extensions,
            is_signed=record.is_signed,
            crl_number=record.crl_number,
        )
    else:
        security = security or SecurityOptions()
        expect = _Expectations(
            include_issuer=security.include_issuer,
            include_extensions=security.include_extensions,
        )

    return _with_record(_check(cert_list, ca, expect, now or utcnow()), record)
