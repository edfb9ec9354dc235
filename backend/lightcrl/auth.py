from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from lightcrl.security import decode_access_token, verify_password, is_bcrypt_hash
from lightcrl.config import settings

security = HTTPBearer()


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Resolve the operator from the bearer token; the username is recorded as the CRL actor"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_access_token(credentials.credentials)
    if payload is None or payload.get("sub") is None:
        raise credentials_exception

    return {"username": payload["sub"]}


def verify_admin_password(username: str, password: str) -> bool:
    if username != settings.ADMIN:
        return False

    if is_bcrypt_hash(settings.ADMIN_PASSWORD):
        return verify_password(password, settings.ADMIN_PASSWORD)
    return password == settings.ADMIN_PASSWORD
