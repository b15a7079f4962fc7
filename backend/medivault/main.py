from contextlib import asynccontextmanager
import logging
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from medivault.api import access, admin, documents, health, patients, permissions
from medivault.config import settings
from medivault.database import close_db, init_db
from medivault.logging import configure_logging, request_id_var

configure_logging()
logger = logging.getLogger("medivault")

ERROR_TYPE_HEADER = "X-Error-Type"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    # Responses carry patient data; never let a shared cache keep them.
    "Cache-Control": "no-store",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
}
HSTS_HEADER = "max-age=63072000; includeSubDomains; preload"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database on startup and release the pool on shutdown."""
    logger.info("Starting %s", settings.app_name)
    try:
        await init_db()
    except Exception:
        logger.exception("Failed to initialize database")
        raise
    logger.info("Database initialized")

    yield

    try:
        await close_db()
    except Exception:
        logger.exception("Error closing database")
    logger.info("%s shutdown complete", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    # MediVault Access API

    Patient-controlled access to medical records.

    ## Features

    - **Doctor Access** - Doctors request access; the patient relays a one-time code
    - **Access Control** - Patients review and revoke granted permissions
    - **Deletion Requests** - Hospital admins approve deletions with the patient's code
    - **Trash** - Deleted documents stay recoverable by their owner
    """,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    request_id_var.set(request_id)
    response = await call_next(request)
    response.headers.setdefault("X-Request-Id", request_id)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if not settings.debug:
        response.headers.setdefault("Strict-Transport-Security", HSTS_HEADER)
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

app.include_router(health.router)
for module in (access, permissions, patients, documents, admin):
    app.include_router(module.router, prefix=settings.api_prefix)


def _error_response(
    status_code: int,
    message,
    error_type: str,
    headers: dict[str, str] | None = None,
    **extra,
) -> JSONResponse:
    error = {
        "message": message,
        "status_code": status_code,
        "type": error_type,
        **extra,
        "request_id": request_id_var.get(),
    }
    return JSONResponse(status_code=status_code, content={"error": error}, headers=headers)


def _validation_details(exc: RequestValidationError) -> list[dict]:
    """Validation details without echoing submitted values back."""
    return [
        {key: value for key, value in error.items() if key not in ("input", "ctx")}
        for error in exc.errors()
    ]


@app.exception_handler(HTTPException)
async def http_exception_handler(_request: Request, exc: HTTPException):
    headers = dict(exc.headers or {})
    error_type = headers.pop(ERROR_TYPE_HEADER, "http_error")
    return _error_response(exc.status_code, exc.detail, error_type, headers=headers or None)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    return _error_response(
        422, "Validation error", "validation_error", details=_validation_details(exc)
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(_request: Request, _exc: Exception):
    logger.exception("Unhandled error")
    return _error_response(500, "Internal server error", "server_error")
