import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lightcrl.errors import NotFoundError, StorageError
from lightcrl.models.crl import CRL, CRLEntry, CRLNumberSequence, CRLStatus
from lightcrl.services import crypto_service

if TYPE_CHECKING:
    from lightcrl.services.crl_signer import FinalizedCRL

log = logging.getLogger(__name__)


def get_crl(db: Session, crl_id: int) -> CRL:
    crl = db.query(CRL).filter(CRL.id == crl_id).first()
    if not crl:
        raise NotFoundError(f"CRL {crl_id} not found")
    return crl


def get_active_crl(db: Session, ca_id: int) -> Optional[CRL]:
    return (
        db.query(CRL)
        .filter(CRL.ca_id == ca_id, CRL.status == CRLStatus.ACTIVE)
        .order_by(CRL.crl_number.desc())
        .first()
    )


def list_crls(
    db: Session,
    page: int = 1,
    per_page: int = 10,
    ca_id: Optional[int] = None,
    status: Optional[CRLStatus] = None,
) -> dict:
    query = db.query(CRL)

    if ca_id:
        query = query.filter(CRL.ca_id == ca_id)
    if status:
        query = query.filter(CRL.status == status)

    total = query.count()
    crls = (
        query.order_by(CRL.ca_id, CRL.crl_number.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )

    return {
        "crls": crls,
        "total": total,
        "page": page,
        "per_page": per_page,
    }


def persist_crl(db: Session, finalized: "FinalizedCRL", generated_at: datetime) -> CRL:
    """Store ``finalized`` as the CA's active CRL.

    The insert, the bump of the CA's number sequence and the flip of the
    previous active CRL to superseded commit together; on any error all of
    them are rolled back. An unsigned CRL never displaces a signed active
    one and is stored as superseded instead.
    """
    unsigned = finalized.unsigned
    signed_active = (
        db.query(CRL.id)
        .filter(CRL.ca_id == unsigned.ca_id, CRL.status == CRLStatus.ACTIVE, CRL.is_signed == True)
        .first()
    )
    takes_over = finalized.is_signed or signed_active is None
    crl = CRL(
        ca_id=unsigned.ca_id,
        crl_number=unsigned.crl_number,
        issuer=unsigned.issuer,
        this_update=unsigned.this_update,
        next_update=unsigned.next_update,
        signature_algorithm=finalized.signature_algorithm,
        signature=finalized.signature,
        is_signed=finalized.is_signed,
        include_issuer=unsigned.security.include_issuer,
        include_extensions=unsigned.security.include_extensions,
        crl_der=finalized.der,
        status=CRLStatus.ACTIVE if takes_over else CRLStatus.SUPERSEDED,
        size=len(finalized.der),
        trigger_reason=unsigned.trigger_reason,
        generated_by=unsigned.generated_by,
        generated_at=generated_at,
        distribution_point_ids=unsigned.distribution_points_json,
    )
    crl.entries = [
        CRLEntry(
            serial_number=crypto_service.hex_serial(entry.serial_number),
            revocation_date=entry.revocation_date.replace(tzinfo=None),
            reason=entry.reason,
        )
        for entry in unsigned.entries
    ]

    superseded = []
    try:
        db.add(crl)
        db.flush()
        _advance_sequence(db, unsigned.ca_id, unsigned.crl_number)
        if takes_over:
            superseded = (
                db.query(CRL)
                .filter(CRL.ca_id == crl.ca_id, CRL.status == CRLStatus.ACTIVE, CRL.id != crl.id)
                .all()
            )
            for previous in superseded:
                previous.status = CRLStatus.SUPERSEDED
        db.commit()
    except (SQLAlchemyError, StorageError):
        db.rollback()
        log.exception("Failed to persist CRL #%d for CA %s", unsigned.crl_number, unsigned.ca_id)
        raise

    db.refresh(crl)
    log.info(
        "Stored CRL %s (#%d) for CA %s, superseded %s",
        crl.id,
        crl.crl_number,
        crl.ca_id,
        [p.id for p in superseded] or "none",
    )
    return crl


def _advance_sequence(db: Session, ca_id: int, crl_number: int) -> None:
    sequence = db.query(CRLNumberSequence).filter(CRLNumberSequence.ca_id == ca_id).first()
    if sequence is None:
        sequence = CRLNumberSequence(ca_id=ca_id, last_number=0)
        db.add(sequence)
    if crl_number <= (sequence.last_number or 0):
        raise StorageError(
            f"CRL number {crl_number} for CA {ca_id} was already issued (last {sequence.last_number})"
        )
    sequence.last_number = crl_number


def expire_stale_crls(db: Session, now: datetime, ca_id: Optional[int] = None) -> int:
    """Flip active and superseded CRLs past their nextUpdate to expired."""
    query = db.query(CRL).filter(
        CRL.status.in_([CRLStatus.ACTIVE, CRLStatus.SUPERSEDED]),
        CRL.next_update < now,
    )
    if ca_id:
        query = query.filter(CRL.ca_id == ca_id)

    stale = query.all()
    for crl in stale:
        crl.status = CRLStatus.EXPIRED
    db.commit()

    if stale:
        log.info("Expired %d CRL(s): %s", len(stale), [c.id for c in stale])
    return len(stale)


def delete_crl(db: Session, crl: CRL) -> None:
    if crl.status == CRLStatus.ACTIVE:
        raise ValueError(f"CRL {crl.id} is active and cannot be deleted")
    db.delete(crl)
