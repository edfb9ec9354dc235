from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from sqlalchemy.orm import Session

from lightcrl.database import get_db
from lightcrl.errors import NotFoundError
from lightcrl.services.crl_service import get_active_crl_der, get_point_crl_der
from lightcrl.services.distribution import CRL_MEDIA_TYPE

router = APIRouter(prefix="/public", tags=["Public"])


@router.get("/health", summary="Health check", description="Public health probe endpoint.")
async def health_check():
    return {"status": "healthy"}


@router.get(
    "/crl/points/{point_id}.crl",
    summary="Download CRL for a distribution point",
    description="The active signed CRL of the CA a distribution point belongs to.",
)
async def download_point_crl(point_id: int, db: Session = Depends(get_db)) -> Response:
    try:
        crl_der = get_point_crl_der(db, point_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    return Response(
        content=crl_der,
        media_type=CRL_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename=point_{point_id}.crl"},
    )


@router.get(
    "/crl/{ca_id}.crl", summary="Download public CRL", description="The active signed CRL of a CA, DER encoded."
)
async def download_crl(ca_id: int, db: Session = Depends(get_db)) -> Response:
    try:
        crl_der = get_active_crl_der(db, ca_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    return Response(
        content=crl_der,
        media_type=CRL_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename=ca_{ca_id}.crl"},
    )
