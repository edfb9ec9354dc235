import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lightcrl.errors import CRLEngineError, NotFoundError
from lightcrl.models.crl import CRLEntry
from lightcrl.models.distribution import CRLDistributionPoint
from lightcrl.models.settings import CRLGenerationLog
from lightcrl.schemas.crl import CRLDetail, CRLGenerationRequest, GenerationResult
from lightcrl.schemas.crl_settings import CRLConfig
from lightcrl.services.collaborators import EngineContext
from lightcrl.services.crl_builder import build_crl
from lightcrl.services.crl_signer import sign_crl
from lightcrl.services.crl_store import get_active_crl, get_crl, persist_crl
from lightcrl.services.distribution import DistributionEngine

log = logging.getLogger(__name__)


def _record_attempt(
    db: Session,
    request: CRLGenerationRequest,
    now: datetime,
    success: bool,
    message: str,
    crl_id: Optional[int] = None,
) -> None:
    db.add(
        CRLGenerationLog(
            ca_id=request.ca_id,
            trigger_reason=request.reason,
            priority=request.priority,
            requested_by=request.requested_by,
            success=success,
            message=message,
            crl_id=crl_id,
            created_at=now,
        )
    )
    db.commit()


def _failed(
    db: Session,
    request: CRLGenerationRequest,
    ctx: EngineContext,
    now: datetime,
    message: str,
    error_code: str,
    config: Optional[CRLConfig] = None,
) -> GenerationResult:
    log.error("CRL generation for CA %s failed (%s): %s", request.ca_id, error_code, message)
    _record_attempt(db, request, now, success=False, message=message)

    if config is None:
        try:
            config = ctx.config_factory(db).get_config(request.ca_id)
        except NotFoundError:
            config = None
    if config is not None and config.notifications.notify_on_failure:
        ctx.notify(
            "crl.generation_failed",
            {"ca_id": request.ca_id, "reason": request.reason, "error_code": error_code, "message": message},
        )

    return GenerationResult(success=False, generated=False, message=message, error_code=error_code)


def generate_crl(
    db: Session, request: CRLGenerationRequest, ctx: EngineContext, distribute: bool = True
) -> GenerationResult:
    """Build, sign, store and publish a CRL for ``request.ca_id`` if one is due.

    Generation for a CA is serialised on that CA's lock. Raises NotFoundError
    for an unknown CA; every other failure is returned as an unsuccessful
    result and recorded in the generation log.
    """
    with ctx.locks.lock_for(request.ca_id):
        return _generate_locked(db, request, ctx, distribute)


def _generate_locked(
    db: Session, request: CRLGenerationRequest, ctx: EngineContext, distribute: bool
) -> GenerationResult:
    now = ctx.clock()

    try:
        outcome = build_crl(db, request, ctx, now)
    except NotFoundError:
        raise
    except CRLEngineError as exc:
        return _failed(db, request, ctx, now, str(exc), exc.code)

    if not outcome.due:
        log.info("Skipping CRL generation for CA %s: %s", request.ca_id, outcome.message)
        return GenerationResult(success=True, generated=False, message=outcome.message)

    config = outcome.config
    try:
        finalized = sign_crl(outcome.crl, ctx.signer_factory(db))
        crl = persist_crl(db, finalized, generated_at=now)
    except CRLEngineError as exc:
        return _failed(db, request, ctx, now, str(exc), exc.code, config)
    except SQLAlchemyError as exc:
        return _failed(db, request, ctx, now, f"Failed to store CRL: {exc}", "STORAGE_ERROR", config)

    message = f"CRL #{crl.crl_number} generated for CA {crl.ca_id}"
    _record_attempt(db, request, now, success=True, message=message, crl_id=crl.id)
    log.info(
        "%s (%s, priority %s, %d entries, by %s)",
        message,
        request.reason,
        request.priority,
        len(crl.entries),
        request.requested_by,
    )

    distribution = None
    if distribute and crl.is_signed and config.enabled_points:
        try:
            distribution = DistributionEngine(db, ctx).distribute(crl)
        except CRLEngineError as exc:
            log.error("Distribution of CRL %s failed: %s", crl.id, exc)
        except SQLAlchemyError:
            db.rollback()
            log.exception("Failed to record distribution of CRL %s", crl.id)

    if config.notifications.notify_on_generation:
        ctx.notify(
            "crl.generated",
            {
                "ca_id": crl.ca_id,
                "crl_id": crl.id,
                "crl_number": crl.crl_number,
                "entries": len(crl.entries),
                "next_update": crl.next_update.isoformat(),
            },
        )

    return GenerationResult(
        success=True,
        generated=True,
        message=message,
        crl=CRLDetail.model_validate(crl),
        distribution=distribution,
    )


def get_active_crl_der(db: Session, ca_id: int) -> bytes:
    """DER of the CA's active CRL, as served to relying parties. Unsigned CRLs are never served."""
    crl = get_active_crl(db, ca_id)
    if not crl or not crl.is_signed:
        raise NotFoundError(f"No active CRL for CA {ca_id}")
    return crl.crl_der


def get_point_crl_der(db: Session, point_id: int) -> bytes:
    point = db.query(CRLDistributionPoint).filter(CRLDistributionPoint.id == point_id).first()
    if not point or not point.enabled:
        raise NotFoundError(f"Distribution point {point_id} not found")
    return get_active_crl_der(db, point.ca_id)


def list_revocations(db: Session, crl_id: int, page: int = 1, per_page: int = 10) -> dict:
    crl = get_crl(db, crl_id)
    query = db.query(CRLEntry).filter(CRLEntry.crl_id == crl.id)
    total = query.count()
    entries = (
        # serials are unpadded hex, so shorter means smaller
        query.order_by(func.length(CRLEntry.serial_number), CRLEntry.serial_number)
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "revocations": [
            {
                "serial_number": e.serial_number,
                "revoked_at": e.revocation_date,
                "reason": e.reason.value,
            }
            for e in entries
        ],
        "total": total,
    }