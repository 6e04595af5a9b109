"""FastAPI app entrypoint."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pagehost.api.routes.health import router as health_router
from pagehost.api.routes.projects import deploy_error_payload, received_file_names
from pagehost.api.routes.projects import router as projects_router
from pagehost.config import Settings, get_settings
from pagehost.core.deploy_manager import DeploymentManager
from pagehost.core.errors import DeploymentError, InvalidInput
from pagehost.logging_config import configure_logging

logger = logging.getLogger(__name__)


def create_app(
    manager: DeploymentManager | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    deploy_manager = manager or DeploymentManager.from_settings(settings)
    shutdown_timeout = settings.shutdown_timeout

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await run_in_threadpool(app.state.deploy_manager.teardown_all, shutdown_timeout)

    app = FastAPI(title="pagehost API", version="0.1.0", lifespan=lifespan)
    app.state.deploy_manager = deploy_manager
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.include_router(projects_router)
    app.include_router(health_router)

    @app.exception_handler(DeploymentError)
    async def deployment_error_handler(request: Request, exc: DeploymentError) -> JSONResponse:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"success": False, **exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
            for error in exc.errors()
        ]
        error = InvalidInput("Invalid request body", {"errors": errors})
        logger.info("%s %s -> %s: %s", request.method, request.url.path, error.kind, errors)
        if request.method == "POST" and request.url.path.rstrip("/") == projects_router.prefix:
            content = deploy_error_payload(error, received_file_names(exc.body))
        else:
            content = {"success": False, **error.to_dict()}
        return JSONResponse(status_code=error.status_code, content=content)

    return app


def run() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        create_app(settings=settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
