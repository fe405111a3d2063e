"""FastAPI application entry point for BYOK Router Proxy."""

import asyncio
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from http import HTTPStatus

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from byokrouter.domain.components.key_store import KeyNotFoundError, KeyValidationError
from byokrouter.domain.interfaces.credit_ledger import LedgerError
from byokrouter.domain.interfaces.key_repository import KeyStoreError
from byokrouter.domain.interfaces.policy_source import PolicySourceError
from byokrouter.domain.models.system_error import ErrorKind, PaymentRequiredError, ProviderError
from byokrouter.infrastructure.utils.validation import ValidationError
from byokrouter_proxy.api import admin, api_keys, v1
from byokrouter_proxy.dependencies import get_router

# Initialize structured logger
logger = structlog.get_logger(__name__)


def get_shutdown_timeout() -> int:
    """Get shutdown timeout from environment variable.

    Returns:
        Shutdown timeout in seconds (default: 30).
    """
    return int(os.getenv("SHUTDOWN_TIMEOUT_SECONDS", "30"))


async def cleanup_resources() -> None:
    """Close the router: policy refresh task, provider HTTP clients and Redis."""
    logger.info("shutdown_started", message="Beginning graceful shutdown")
    if get_router.cache_info().currsize:
        await get_router().close()
        logger.info("shutdown_resource_closed", resource="router", status="success")
    logger.info("shutdown_completed", message="Graceful shutdown completed successfully")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """FastAPI lifespan context manager for startup and shutdown.

    Yields:
        None: Application runs between startup and shutdown.
    """
    logger.info("application_startup", message="BYOK Router Proxy starting up")
    shutdown_timeout = get_shutdown_timeout()
    logger.info("shutdown_timeout_configured", timeout_seconds=shutdown_timeout)

    yield

    logger.info("shutdown_signal_received", message="Shutdown signal received, starting graceful shutdown")
    try:
        await asyncio.wait_for(cleanup_resources(), timeout=shutdown_timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "shutdown_timeout_exceeded",
            timeout_seconds=shutdown_timeout,
            message=f"Shutdown timeout ({shutdown_timeout}s) exceeded, forcing exit",
        )
    except Exception as e:
        logger.error(
            "shutdown_error",
            error=str(e),
            message="Unexpected error during shutdown",
        )


def _error_body(status_code: int, message: str, **extra: object) -> dict[str, object]:
    return {"error": HTTPStatus(status_code).phrase, "message": message, **extra}


app = FastAPI(
    title="BYOK Router Proxy",
    version="0.1.0",
    description="Routes inference requests between platform credits and users' own provider keys",
    lifespan=lifespan,
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.status_code, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(PaymentRequiredError)
async def payment_required_handler(request: Request, exc: PaymentRequiredError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=exc.to_dict())


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    if exc.kind == ErrorKind.Transient:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_502_BAD_GATEWAY
    logger.warning(
        "provider_request_failed",
        endpoint=request.url.path,
        kind=exc.kind.value,
        provider=exc.provider.value if exc.provider else None,
        status_code=exc.status_code,
    )
    headers = None
    if exc.retry_after is not None and status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        headers = {"Retry-After": str(int(exc.retry_after))}
    return JSONResponse(
        status_code=status_code,
        content=_error_body(status_code, exc.message, kind=exc.kind.value),
        headers=headers,
    )


@app.exception_handler(KeyValidationError)
async def key_validation_handler(request: Request, exc: KeyValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Invalid API key", "message": exc.message, "reason": exc.reason},
    )


@app.exception_handler(KeyNotFoundError)
async def key_not_found_handler(request: Request, exc: KeyNotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=_error_body(status.HTTP_404_NOT_FOUND, "API key not found"),
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(status.HTTP_400_BAD_REQUEST, exc.message, field=exc.field),
    )


@app.exception_handler(PydanticValidationError)
async def task_validation_handler(request: Request, exc: PydanticValidationError) -> JSONResponse:
    # Request bodies that parse but do not form a valid task (e.g. an empty upload)
    message = "; ".join(error["msg"] for error in exc.errors())
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(status.HTTP_400_BAD_REQUEST, message),
    )


@app.exception_handler(PolicySourceError)
async def policy_source_error_handler(request: Request, exc: PolicySourceError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=_error_body(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc)),
    )


@app.exception_handler(KeyStoreError)
@app.exception_handler(LedgerError)
async def storage_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("storage_error", endpoint=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=_error_body(status.HTTP_503_SERVICE_UNAVAILABLE, "Storage temporarily unavailable"),
    )


app.include_router(v1.router, prefix="/v1")
app.include_router(api_keys.router, prefix="/api-keys")
app.include_router(admin.router, prefix="/admin")
