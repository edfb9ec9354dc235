import base64
import binascii
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from lightcrl.api.deps import get_engine_context, http_error
from lightcrl.auth import get_current_user
from lightcrl.config import settings
from lightcrl.database import get_db
from lightcrl.errors import CRLEngineError, NotFoundError
from lightcrl.models.crl import CRLStatus
from lightcrl.schemas.common import error_response, success_response
from lightcrl.schemas.crl import (
    CleanupRequest,
    CRLDetail,
    CRLGenerationRequest,
    CRLListResponse,
    CRLRevocationsResponse,
    CRLValidateRequest,
    ExportFormat,
    RetryRequest,
)
from lightcrl.services.collaborators import EngineContext
from lightcrl.services.crl_reports import cleanup_old_crls, export_crl, get_statistics
from lightcrl.services.crl_service import generate_crl, list_revocations
from lightcrl.services.crl_store import get_crl, list_crls
from lightcrl.services.crl_validator import validate_crl, validate_crl_bytes
from lightcrl.services.distribution import DistributionEngine

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/crl", tags=["CRL"], dependencies=[Depends(get_current_user)])


def _generate_in_background(session_factory, request: CRLGenerationRequest, ctx: EngineContext) -> None:
    db = session_factory()
    try:
        result = generate_crl(db, request, ctx)
        log.info("Background CRL generation for CA %s: %s", request.ca_id, result.message)
    except CRLEngineError as exc:
        log.error("Background CRL generation for CA %s failed: %s", request.ca_id, exc)
    finally:
        db.close()


@router.get("/list", summary="List CRLs", description="List CRL records with optional CA and status filters.")
async def list_crls_endpoint(
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    ca_id: Optional[int] = Query(None),
    status: Optional[CRLStatus] = Query(None),
    db: Session = Depends(get_db),
):
    result = list_crls(db, page, per_page, ca_id, status)
    page_data = CRLListResponse(
        crls=[CRLDetail.model_validate(c) for c in result["crls"]],
        total=result["total"],
        page=result["page"],
        per_page=result["per_page"],
    )
    return success_response("CRLs retrieved", page_data.model_dump(mode="json")).model_dump()


@router.post(
    "/generate",
    summary="Generate CRL",
    description="Generate a CRL for a CA if one is due (or forced). With wait=false the request is queued.",
)
def generate_crl_endpoint(
    payload: CRLGenerationRequest,
    http_request: Request,
    background_tasks: BackgroundTasks,
    wait: bool = Query(True),
    user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    payload = payload.model_copy(update={"requested_by": user["username"]})

    if not wait:
        try:
            ctx.config_factory(db).get_config(payload.ca_id)
        except NotFoundError as exc:
            raise http_error(exc) from exc
        background_tasks.add_task(
            _generate_in_background, http_request.app.state.session_factory, payload, ctx
        )
        return JSONResponse(
            status_code=202,
            content=success_response("CRL generation queued", {"ca_id": payload.ca_id}).model_dump(),
        )

    try:
        result = generate_crl(db, payload, ctx)
    except CRLEngineError as exc:
        raise http_error(exc) from exc

    if not result.success:
        return JSONResponse(
            status_code=400 if result.error_code != "SIGNING_ERROR" else 502,
            content=error_response(result.message, result.error_code).model_dump(),
        )
    return success_response(result.message, result.model_dump(mode="json")).model_dump()


@router.get(
    "/statistics",
    summary="CRL statistics",
    description="Counts, sizes, schedule and success rates, optionally for one CA.",
)
async def statistics_endpoint(
    ca_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    stats = get_statistics(db, ctx, ca_id)
    return success_response("Statistics retrieved", stats.model_dump(mode="json")).model_dump()


@router.post(
    "/validate",
    summary="Validate CRL data",
    description="Validate a PEM (or base64 DER) CRL against the given CA.",
)
async def validate_bytes_endpoint(
    payload: CRLValidateRequest,
    db: Session = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    text = payload.crl_pem.strip()
    if text.startswith("-----BEGIN"):
        data = text.encode()
    else:
        try:
            data = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(status_code=400, detail="CRL data is neither PEM nor base64 DER") from exc

    try:
        security = ctx.config_factory(db).get_config(payload.ca_id).security
        result = validate_crl_bytes(db, payload.ca_id, data, now=ctx.clock(), security=security)
    except CRLEngineError as exc:
        raise http_error(exc) from exc
    return success_response("CRL validated", result.model_dump()).model_dump()


@router.post("/retry", summary="Retry failed deliveries", description="Re-publish queued failed deliveries.")
def retry_endpoint(
    payload: Optional[RetryRequest] = None,
    db: Session = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    payload = payload or RetryRequest()
    result = DistributionEngine(db, ctx).retry_failed_deliveries(
        ca_id=payload.ca_id, max_retries=payload.max_retries or settings.CRL_MAX_RETRIES
    )
    return success_response("Retry completed", result.model_dump()).model_dump()


@router.post(
    "/test-distribution",
    summary="Probe distribution points",
    description="Check connectivity to a CA's enabled distribution points without publishing.",
)
def test_distribution_endpoint(
    ca_id: int = Query(..., ge=1),
    db: Session = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    try:
        ctx.config_factory(db).get_config(ca_id)
    except CRLEngineError as exc:
        raise http_error(exc) from exc
    result = DistributionEngine(db, ctx).test_distribution_points(ca_id)
    return success_response("Distribution points probed", result.model_dump()).model_dump()


@router.post("/cleanup", summary="Clean up CRLs", description="Delete expired CRLs past the retention period.")
async def cleanup_endpoint(
    payload: Optional[CleanupRequest] = None,
    db: Session = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    payload = payload or CleanupRequest()
    result = cleanup_old_crls(db, payload.retention_days or settings.CRL_RETENTION_DAYS, ctx.clock())
    return success_response("Cleanup completed", result.model_dump()).model_dump()


@router.get("/{crl_id}", summary="Get CRL", description="CRL record details.")
async def get_crl_endpoint(crl_id: int, db: Session = Depends(get_db)):
    try:
        crl = get_crl(db, crl_id)
    except CRLEngineError as exc:
        raise http_error(exc) from exc
    return success_response("CRL retrieved", CRLDetail.model_validate(crl).model_dump(mode="json")).model_dump()


@router.get("/{crl_id}/validate", summary="Validate CRL", description="Validate a stored CRL.")
async def validate_endpoint(
    crl_id: int,
    db: Session = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    try:
        result = validate_crl(db, crl_id, now=ctx.clock())
    except CRLEngineError as exc:
        raise http_error(exc) from exc
    return success_response("CRL validated", result.model_dump()).model_dump()


@router.get("/{crl_id}/export", summary="Export CRL", description="Download a CRL as PEM or DER.")
async def export_endpoint(
    crl_id: int,
    format: ExportFormat = Query("pem"),
    db: Session = Depends(get_db),
):
    try:
        exported = export_crl(db, crl_id, format)
    except CRLEngineError as exc:
        raise http_error(exc) from exc

    return Response(
        content=exported.data,
        media_type=exported.media_type,
        headers={"Content-Disposition": f"attachment; filename={exported.filename}"},
    )


@router.get(
    "/{crl_id}/revocations", summary="List revocations", description="List the entries of a CRL."
)
async def revocations_endpoint(
    crl_id: int,
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    try:
        result = list_revocations(db, crl_id, page, per_page)
    except CRLEngineError as exc:
        raise http_error(exc) from exc
    page_data = CRLRevocationsResponse.model_validate(result)
    return success_response("Revocations retrieved", page_data.model_dump(mode="json")).model_dump()


@router.post(
    "/{crl_id}/distribute",
    summary="Distribute CRL",
    description="Publish the CA's active, signed CRL to its enabled distribution points.",
)
def distribute_endpoint(
    crl_id: int,
    db: Session = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    try:
        crl = get_crl(db, crl_id)
        result = DistributionEngine(db, ctx).distribute(crl)
    except CRLEngineError as exc:
        raise http_error(exc) from exc
    return success_response(
        "CRL distributed" if result.success else "CRL distribution partially failed",
        result.model_dump(),
    ).model_dump()
