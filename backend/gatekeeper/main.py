from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import inspect

import gatekeeper.models.consumed_challenge  # noqa: F401  registers the table
from gatekeeper.config import settings
from gatekeeper.database import Base, SessionLocal, engine
from gatekeeper.logging_config import setup_logging
from gatekeeper.middleware.logging import CORRELATION_HEADER, LoggingMiddleware
from gatekeeper.middleware.rate_limit import limiter
from gatekeeper.routers import gate, parameters
from gatekeeper.scheduler import shutdown_scheduler, start_scheduler
from gatekeeper.services.admission_service import build_gate

logger = structlog.get_logger()

# Database tables are managed by Alembic migrations
# Run: alembic upgrade head


def check_database_tables() -> None:
    """Fail fast when migrations have not been applied."""
    existing = set(inspect(engine).get_table_names())
    missing = sorted(set(Base.metadata.tables) - existing)
    if missing:
        raise RuntimeError(
            f"Database tables missing: {', '.join(missing)}. "
            "Run `alembic upgrade head` from the backend directory."
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the gate and run its maintenance jobs for the app's lifetime."""
    setup_logging()
    check_database_tables()
    admission = build_gate(SessionLocal)
    app.state.gate = admission
    start_scheduler(admission)
    logger.info(
        "gate_started",
        modulus_bits=admission.params.modulus.bit_length(),
        base_difficulty=settings.base_difficulty,
        max_difficulty=settings.max_difficulty,
    )
    yield
    shutdown_scheduler()
    admission.shutdown()


app = FastAPI(
    title="Gatekeeper",
    description="VDF proof-of-work admission gate",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    # Runs outside LoggingMiddleware, so the header is set here
    correlation_id = structlog.contextvars.get_contextvars().get("correlation_id")
    headers = {CORRELATION_HEADER: correlation_id} if correlation_id else None
    return JSONResponse(
        status_code=500, content={"detail": "Internal Server Error"}, headers=headers
    )


app.add_middleware(LoggingMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Session-Key", CORRELATION_HEADER],
)

# Routers
app.include_router(gate.router, prefix="/api/v1", tags=["gate"])
app.include_router(parameters.router, prefix="/api/v1", tags=["parameters"])


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
