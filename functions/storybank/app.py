"""
FastAPI application entry point for the storybank service.
"""

from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storybank.config import get_settings
from storybank.errors import StorybankError
from storybank.routes import router

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal Server Error"


async def storybank_error_handler(request: Request, exc: StorybankError):
    if exc.status_code >= 500:
        # The cause was logged where it happened; don't leak store details.
        logger.error(
            "%s %s failed: %s", request.method, request.url.path, exc.message
        )
        return JSONResponse(
            status_code=exc.status_code, content={"detail": INTERNAL_ERROR_MESSAGE}
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})
    first = errors[0]
    location = ".".join(
        str(part) for part in first.get("loc", ()) if part not in ("body", "path", "query")
    )
    if not location:
        location = "request body"
    return JSONResponse(
        status_code=400,
        content={"detail": f"Invalid '{location}': {first.get('msg', 'invalid value')}"},
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": INTERNAL_ERROR_MESSAGE})


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    app = FastAPI(title="Storybank API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StorybankError, storybank_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()


def main() -> None:
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
