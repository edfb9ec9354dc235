import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, HTTPException, status

from lightcrl.auth import verify_admin_password
from lightcrl.config import settings
from lightcrl.schemas.auth import LoginRequest, LoginResponse
from lightcrl.security import create_access_token

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


@router.post(
    "/login",
    response_model=LoginResponse,
    summary="Operator login",
    description="Authenticate the CRL operator and return a JWT access token.",
)
async def login(request: LoginRequest):
    if not verify_admin_password(request.username, request.password):
        log.warning("Rejected login for %r", request.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )

    lifetime = timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    token = create_access_token(data={"sub": request.username}, expires_delta=lifetime)

    return LoginResponse(
        token=token,
        expires_in=int(lifetime.total_seconds()),
        expires_at=(datetime.now(timezone.utc) + lifetime).isoformat(),
    )
