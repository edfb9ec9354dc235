import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from lightcrl.config import settings
from lightcrl.database import Base, SessionLocal, engine
from lightcrl.schemas.common import error_response
from lightcrl.services.collaborators import EngineContext
from lightcrl.services.scheduler import CRLScheduler

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)

    ctx = EngineContext()
    app.state.crl_context = ctx
    app.state.session_factory = SessionLocal

    scheduler = CRLScheduler(SessionLocal, ctx)
    app.state.crl_scheduler = scheduler
    if settings.CRL_SCHEDULER_ENABLED:
        scheduler.start()
    else:
        log.info("CRL scheduler disabled")

    try:
        yield
    finally:
        scheduler.stop()


app = FastAPI(
    title="LightCRL",
    description="CRL lifecycle service: generation, signing, publication and validation of CA revocation lists",
    version="0.1.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(str(exc.detail), f"HTTP_{exc.status_code}").model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    return JSONResponse(
        status_code=422,
        content=error_response("Validation error", "VALIDATION_ERROR", str(exc)).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_response(
            "Internal server error",
            "INTERNAL_ERROR",
            str(exc) if settings.DEBUG else "An unexpected error occurred",
        ).model_dump(),
    )


# Import and register API routers
from lightcrl.api import auth, crl, crl_settings, public

app.include_router(auth.router)
app.include_router(crl_settings.router)
app.include_router(crl.router)
app.include_router(public.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
