from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lightcrl.api.deps import http_error
from lightcrl.auth import get_current_user
from lightcrl.database import get_db
from lightcrl.errors import CRLEngineError
from lightcrl.schemas.common import success_response
from lightcrl.schemas.crl_settings import (
    CRLConfigUpdate,
    DistributionPointConfig,
    DistributionPointCreate,
    DistributionPointUpdate,
)
from lightcrl.services.crl_settings_service import (
    create_distribution_point,
    get_crl_config,
    list_distribution_points,
    update_crl_config,
    update_distribution_point,
)

router = APIRouter(
    prefix="/api/crl/settings", tags=["CRL Settings"], dependencies=[Depends(get_current_user)]
)


def _point(point) -> dict:
    return DistributionPointConfig.model_validate(point).model_dump(mode="json")


@router.get("/{ca_id}", summary="Get CRL settings", description="Effective CRL configuration of a CA.")
async def get_settings_endpoint(ca_id: int, db: Session = Depends(get_db)):
    try:
        config = get_crl_config(db, ca_id)
    except CRLEngineError as exc:
        raise http_error(exc) from exc
    return success_response("CRL settings retrieved", config.model_dump(mode="json")).model_dump()


@router.put("/{ca_id}", summary="Update CRL settings", description="Store the CRL configuration of a CA.")
async def update_settings_endpoint(ca_id: int, request: CRLConfigUpdate, db: Session = Depends(get_db)):
    try:
        config = update_crl_config(db, ca_id, request)
    except CRLEngineError as exc:
        raise http_error(exc) from exc
    return success_response("CRL settings updated", config.model_dump(mode="json")).model_dump()


@router.get(
    "/{ca_id}/distribution-points",
    summary="List distribution points",
    description="Distribution points of a CA with their delivery counters.",
)
async def list_points_endpoint(ca_id: int, db: Session = Depends(get_db)):
    try:
        points = list_distribution_points(db, ca_id)
    except CRLEngineError as exc:
        raise http_error(exc) from exc
    return success_response("Distribution points retrieved", [_point(p) for p in points]).model_dump()


@router.post(
    "/{ca_id}/distribution-points",
    summary="Add distribution point",
    description="Register a URL the CA's CRLs are published to.",
)
async def create_point_endpoint(ca_id: int, request: DistributionPointCreate, db: Session = Depends(get_db)):
    try:
        point = create_distribution_point(db, ca_id, request)
    except CRLEngineError as exc:
        raise http_error(exc) from exc
    return success_response("Distribution point created", _point(point)).model_dump()


@router.patch(
    "/distribution-points/{point_id}",
    summary="Update distribution point",
    description="Change a distribution point's URL, priority or enabled flag.",
)
async def update_point_endpoint(point_id: int, request: DistributionPointUpdate, db: Session = Depends(get_db)):
    try:
        point = update_distribution_point(db, point_id, request)
    except CRLEngineError as exc:
        raise http_error(exc) from exc
    return success_response("Distribution point updated", _point(point)).model_dump()
