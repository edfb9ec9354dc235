import logging
from datetime import datetime, timedelta
from typing import Optional

from asn1crypto import pem
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lightcrl.config import settings
from lightcrl.errors import NotFoundError
from lightcrl.models.crl import CRL, CRLEntry, CRLStatus
from lightcrl.models.distribution import CRLDeliveryAttempt
from lightcrl.models.settings import CRLGenerationLog
from lightcrl.schemas.crl import CleanupResult, CRLStatistics, ExportFormat, ExportResult
from lightcrl.services.collaborators import EngineContext
from lightcrl.services.crl_builder import due_at
from lightcrl.services.crl_store import delete_crl, get_crl

log = logging.getLogger(__name__)


def _rate(successes: int, total: int) -> float:
    if not total:
        return 100.0
    return round(successes * 100.0 / total, 2)


def get_statistics(
    db: Session,
    ctx: EngineContext,
    ca_id: Optional[int] = None,
    window_days: Optional[int] = None,
) -> CRLStatistics:
    """Aggregate CRL state, optionally for a single CA.

    Success rates cover the last ``window_days`` (default
    ``CRL_STATS_WINDOW_DAYS``) and are percentages.
    """
    now = ctx.clock()
    since = now - timedelta(days=window_days or settings.CRL_STATS_WINDOW_DAYS)

    crls = db.query(CRL)
    if ca_id:
        crls = crls.filter(CRL.ca_id == ca_id)

    counts = dict(
        crls.with_entities(CRL.status, func.count(CRL.id)).group_by(CRL.status).all()
    )
    total = sum(counts.values())
    average_size = crls.with_entities(func.avg(CRL.size)).scalar()
    last_generated = crls.with_entities(func.max(CRL.generated_at)).scalar()
    most_recent = crls.order_by(CRL.generated_at.desc(), CRL.id.desc()).first()

    active = crls.filter(CRL.status == CRLStatus.ACTIVE).all()
    revoked = 0
    next_due = None
    provider = ctx.config_factory(db)
    for crl in active:
        revoked += db.query(func.count(CRLEntry.id)).filter(CRLEntry.crl_id == crl.id).scalar()
        try:
            overlap = provider.get_config(crl.ca_id).overlap_hours
        except NotFoundError:
            overlap = settings.CRL_OVERLAP_HOURS
        due = due_at(crl, overlap)
        if next_due is None or due < next_due:
            next_due = due

    generations = db.query(CRLGenerationLog).filter(CRLGenerationLog.created_at >= since)
    if ca_id:
        generations = generations.filter(CRLGenerationLog.ca_id == ca_id)
    generation_total = generations.count()
    generation_ok = generations.filter(CRLGenerationLog.success == True).count()

    deliveries = (
        db.query(CRLDeliveryAttempt)
        .join(CRL, CRL.id == CRLDeliveryAttempt.crl_id)
        .filter(CRLDeliveryAttempt.created_at >= since)
    )
    if ca_id:
        deliveries = deliveries.filter(CRL.ca_id == ca_id)
    delivery_total = deliveries.count()
    delivery_ok = deliveries.filter(CRLDeliveryAttempt.success == True).count()

    return CRLStatistics(
        total_crls=total,
        active_crls=counts.get(CRLStatus.ACTIVE, 0),
        superseded_crls=counts.get(CRLStatus.SUPERSEDED, 0),
        expired_crls=counts.get(CRLStatus.EXPIRED, 0),
        total_revoked_certificates=revoked,
        average_crl_size=round(float(average_size or 0), 2),
        last_generation_time=last_generated,
        next_scheduled_generation=next_due,
        generation_success_rate=_rate(generation_ok, generation_total),
        distribution_success_rate=_rate(delivery_ok, delivery_total),
        most_recent_crl_id=most_recent.id if most_recent else None,
    )


def export_crl(db: Session, crl_id: int, format: ExportFormat = "pem") -> ExportResult:
    crl = get_crl(db, crl_id)
    if format == "der":
        return ExportResult(format="der", data=crl.crl_der, filename=f"crl_{crl.ca_id}_{crl.id}.der")
    if format == "pem":
        return ExportResult(
            format="pem",
            data=pem.armor("X509 CRL", crl.crl_der),
            filename=f"crl_{crl.ca_id}_{crl.id}.crl",
        )
    raise ValueError(f"Unsupported export format: {format}")


def cleanup_old_crls(db: Session, retention_days: int, now: datetime) -> CleanupResult:
    """Delete expired CRLs generated more than ``retention_days`` ago.

    Each deletion runs in its own savepoint so one failure does not undo the
    others. Active CRLs are never candidates.
    """
    cutoff = now - timedelta(days=retention_days)
    candidates = (
        db.query(CRL)
        .filter(CRL.status == CRLStatus.EXPIRED, CRL.generated_at < cutoff)
        .order_by(CRL.id)
        .all()
    )

    result = CleanupResult()
    for crl in candidates:
        crl_id = crl.id
        try:
            with db.begin_nested():
                delete_crl(db, crl)
            result.deleted += 1
        except (SQLAlchemyError, ValueError) as exc:
            log.error("Failed to delete CRL %s: %s", crl_id, exc)
            result.errors.append(f"CRL {crl_id}: {exc}")
    db.commit()

    log.info(
        "CRL cleanup (retention %d days): %d deleted, %d errors",
        retention_days,
        result.deleted,
        len(result.errors),
    )
    return result
