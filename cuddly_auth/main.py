import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from cuddly_auth.api import api_router
from cuddly_auth.core.config import settings
from cuddly_auth.core.errors import InternalError, ValidationError
from cuddly_auth.core.logging_config import configure_logging
from cuddly_auth.db.session import Database
from cuddly_auth.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from cuddly_auth.schemas.error import ErrorResponse

logger = logging.getLogger(__name__)


def _validation_message(errors: list[dict[str, Any]]) -> str:
    """Reduce pydantic's error list to the first human readable message."""
    if not errors:
        return ValidationError.message
    error = errors[0]
    loc = [str(part) for part in error.get("loc", ()) if part != "body"]
    if error.get("type") == "missing":
        return f"{loc[-1]} is required" if loc else "Request body is required"
    if error.get("type") == "json_invalid":
        return "Malformed JSON body"
    message = str(error.get("msg") or ValidationError.message)
    return message.removeprefix("Value error, ")


def get_application(database: Database | None = None) -> FastAPI:
    configure_logging(settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.database is None
        if owned:
            app.state.database = Database(settings.database_url, echo=settings.database_echo)
        if settings.database_create_tables:
            await app.state.database.create_all()
        try:
            yield
        finally:
            if owned:
                await app.state.database.dispose()
                app.state.database = None

    tags_metadata = [
        {"name": "auth", "description": "Email and password accounts, sessions"},
        {"name": "webauthn", "description": "Passkey registration and sign-in"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.state.database = database
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=getattr(exc, "code", None))
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(payload.model_dump()),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        payload = ErrorResponse(detail=_validation_message(list(exc.errors())), code=ValidationError.code)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=payload.model_dump())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_exception", extra={"path": request.url.path, "method": request.method})
        payload = ErrorResponse(detail=InternalError.message, code=InternalError.code)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=payload.model_dump())

    return app


app = get_application()
