"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tenancy.api.middleware import (
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from tenancy.api.routes import admin, invitations, metrics, subscriptions, workspaces
from tenancy.core.config import get_settings
from tenancy.core.errors import DomainError
from tenancy.core.structured_logging import log_json
from tenancy.schemas.errors import ErrorResponse

settings = get_settings()
logger = logging.getLogger(__name__)

docs_enabled = settings.api_docs_enabled
if docs_enabled is None:
    docs_enabled = settings.environment != "production"

app = FastAPI(
    title="Tenancy API",
    description="Workspace invitations and subscription lifecycle",
    version="1.0.0",
    docs_url="/api/docs" if docs_enabled else None,
    redoc_url="/api/redoc" if docs_enabled else None,
    openapi_url="/api/openapi.json" if docs_enabled else None,
)

# Middleware configuration (order matters - applied in reverse order)
# 1. Request logging (outermost - logs all requests)
app.add_middleware(RequestLoggingMiddleware)

# 2. Security headers
app.add_middleware(SecurityHeadersMiddleware)

# 3. Rate limiting (applied before routing)
app.add_middleware(RateLimitMiddleware)

# 4. CORS (applied after rate limiting)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)


def _error_body(error: str, message: str, details: dict | None = None) -> dict:
    return jsonable_encoder(ErrorResponse(error=error, message=message, details=details))


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Render expected failures as ``ErrorResponse`` bodies."""
    log_json(
        logger,
        logging.WARNING,
        "domain_error",
        method=request.method,
        path=request.url.path,
        status_code=exc.status_code,
        error=exc.error,
        details=exc.details,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.error, exc.message, exc.details),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body("validation_error", "Request validation failed", {"errors": errors}),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log_json(
        logger,
        logging.ERROR,
        "unhandled_error",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        exception=exc.__class__.__name__,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("internal_error", "An unexpected error occurred. Please retry."),
    )


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


app.include_router(workspaces.router, prefix="/api/workspaces", tags=["invitations"])
app.include_router(subscriptions.router, prefix="/api/workspaces", tags=["subscriptions"])
app.include_router(invitations.router, prefix="/api/invitations", tags=["invitations"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])
app.include_router(metrics.router, prefix="/api", tags=["metrics"])
