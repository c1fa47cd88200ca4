from fastapi import FastAPI, HTTPException, Request, Depends, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.concurrency import run_in_threadpool
import structlog
import asyncio
import time
from contextlib import asynccontextmanager

from models import RunRequest, RunReport, ErrorResponse, HealthResponse
from services import get_harness_coordinator
from repositories import RunRepository, get_run_repository
from config import Settings, get_settings
from errors import ConfigurationError, ProvisioningError
from logging_config import configure_logging

configure_logging(get_settings())

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address)

# One harness run at a time; concurrent runs would share the ledger
run_lock = asyncio.Lock()

# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Ledger Isolation Harness API")
    yield
    # Shutdown
    logger.info("Shutting down Ledger Isolation Harness API")

# Create FastAPI app
app = FastAPI(
    title="Ledger Isolation Harness",
    description="Drives concurrent balance-preserving transfers against a transactional store "
                "while a monitor watches the total balance for isolation anomalies",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=get_settings().allowed_methods,
    allow_headers=get_settings().allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    # Log request
    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    # Log response
    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

def run_rate_limit() -> str:
    # resolved like Depends(get_settings), so overrides apply to the limit too
    settings = app.dependency_overrides.get(get_settings, get_settings)()
    return f"{settings.rate_limit_per_minute}/minute"

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get run statistics"
)
async def health_check(
    settings: Settings = Depends(get_settings),
    run_repo: RunRepository = Depends(get_run_repository)
):
    try:
        return HealthResponse(
            status="healthy",
            ledger_backend=settings.ledger_backend,
            runs_recorded=run_repo.get_runs_count()
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )

# Main harness endpoint
@app.post(
    "/runs",
    response_model=RunReport,
    status_code=status.HTTP_201_CREATED,
    summary="Run Harness",
    description="Provision the ledger, run all transfer workers and the invariant monitor, return the report",
    responses={
        201: {"description": "Run finished; see status for success, failure or invariant violation"},
        409: {"description": "Another run is in progress"},
        422: {"description": "Invalid workload configuration"},
        429: {"description": "Rate limit exceeded"},
        503: {"description": "Ledger provisioning failed"}
    }
)
@limiter.limit(run_rate_limit)
async def create_run(
    request: Request,
    run_request: RunRequest,
    settings: Settings = Depends(get_settings),
    run_repo: RunRepository = Depends(get_run_repository)
):
    if run_lock.locked():
        raise HTTPException(
            status_code=409,
            detail="A harness run is already in progress"
        )

    async with run_lock:
        overrides = run_request.dict(exclude_none=True)
        logger.info("Harness run requested", **overrides)

        try:
            coordinator = get_harness_coordinator(settings.copy(update=overrides))
        except ConfigurationError as e:
            logger.warning("Harness run rejected", error=str(e))
            raise HTTPException(
                status_code=422,
                detail=str(e)
            )

        try:
            report = await run_in_threadpool(coordinator.run)
        except ProvisioningError as e:
            logger.error("Ledger provisioning failed", error=str(e))
            raise HTTPException(
                status_code=503,
                detail=f"Ledger provisioning failed: {e}"
            )

        run_repo.store_run(report)
        return report

@app.get(
    "/runs/latest",
    response_model=RunReport,
    summary="Latest Run",
    description="Report of the most recent harness run"
)
async def get_latest_run(run_repo: RunRepository = Depends(get_run_repository)):
    report = run_repo.get_latest_run()
    if report is None:
        raise HTTPException(status_code=404, detail="No runs recorded")
    return report

@app.get(
    "/runs/{run_id}",
    response_model=RunReport,
    summary="Get Run",
    description="Report of a past harness run"
)
async def get_run(run_id: str, run_repo: RunRepository = Depends(get_run_repository)):
    report = run_repo.get_run(run_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return report

# Global exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(ErrorResponse(
            detail=exc.detail,
            error_code=f"HTTP_{exc.status_code}"
        ))
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=jsonable_encoder(ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ))
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": "Ledger Isolation Harness", "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
