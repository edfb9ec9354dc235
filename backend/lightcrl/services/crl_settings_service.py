import logging
from typing import List

from sqlalchemy.orm import Session

from lightcrl.errors import NotFoundError
from lightcrl.models.distribution import CRLDistributionPoint
from lightcrl.models.settings import CRLConfiguration
from lightcrl.schemas.crl_settings import (
    CRLConfig,
    CRLConfigUpdate,
    DistributionPointCreate,
    DistributionPointUpdate,
)
from lightcrl.services.collaborators import DatabaseConfigProvider

log = logging.getLogger(__name__)


def get_crl_config(db: Session, ca_id: int) -> CRLConfig:
    return DatabaseConfigProvider(db).get_config(ca_id)


def update_crl_config(db: Session, ca_id: int, update: CRLConfigUpdate) -> CRLConfig:
    # raises NotFoundError for unknown CAs
    get_crl_config(db, ca_id)

    row = db.query(CRLConfiguration).filter(CRLConfiguration.ca_id == ca_id).first()
    if row is None:
        row = CRLConfiguration(ca_id=ca_id)
        db.add(row)

    row.enabled = update.enabled
    row.auto_generate = update.auto_generate
    row.validity_hours = update.validity_hours
    row.overlap_hours = update.overlap_hours
    row.include_expired = update.include_expired
    row.sign_crl = update.security.sign_crl
    row.include_issuer = update.security.include_issuer
    row.include_extensions = update.security.include_extensions
    row.notify_on_generation = update.notifications.notify_on_generation
    row.notify_on_failure = update.notifications.notify_on_failure
    row.notify_on_distribution_failure = update.notifications.notify_on_distribution_failure
    db.commit()

    log.info(
        "CRL configuration for CA %s updated: enabled=%s validity=%dh overlap=%dh",
        ca_id,
        update.enabled,
        update.validity_hours,
        update.overlap_hours,
    )
    return get_crl_config(db, ca_id)


def list_distribution_points(db: Session, ca_id: int) -> List[CRLDistributionPoint]:
    get_crl_config(db, ca_id)
    return (
        db.query(CRLDistributionPoint)
        .filter(CRLDistributionPoint.ca_id == ca_id)
        .order_by(CRLDistributionPoint.priority, CRLDistributionPoint.id)
        .all()
    )


def create_distribution_point(db: Session, ca_id: int, request: DistributionPointCreate) -> CRLDistributionPoint:
    get_crl_config(db, ca_id)
    point = CRLDistributionPoint(
        ca_id=ca_id,
        url=request.url,
        enabled=request.enabled,
        priority=request.priority,
    )
    db.add(point)
    db.commit()
    db.refresh(point)
    log.info("Added distribution point %s (%s) for CA %s", point.id, point.url, ca_id)
    return point


def update_distribution_point(db: Session, point_id: int, request: DistributionPointUpdate) -> CRLDistributionPoint:
    point = db.query(CRLDistributionPoint).filter(CRLDistributionPoint.id == point_id).first()
    if not point:
        raise NotFoundError(f"Distribution point {point_id} not found")

    for field_name, value in request.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(point, field_name, value)
    db.commit()
    db.refresh(point)
    return point
