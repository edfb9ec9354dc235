from fastapi import HTTPException, Request

from lightcrl.errors import (
    ConfigurationError,
    CRLEngineError,
    DistributionError,
    NotFoundError,
    SigningError,
    ValidationError,
)
from lightcrl.services.collaborators import EngineContext

_STATUS_CODES = {
    NotFoundError: 404,
    ConfigurationError: 400,
    DistributionError: 400,
    ValidationError: 400,
    SigningError: 502,
}


def get_engine_context(request: Request) -> EngineContext:
    return request.app.state.crl_context


def http_error(exc: CRLEngineError) -> HTTPException:
    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
