"""Project deployment routes."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from pagehost.api.deps import get_deploy_manager
from pagehost.api.schemas.deploy import DeployRequest
from pagehost.core.deploy_manager import DeploymentManager
from pagehost.core.errors import DeploymentError, ProjectNotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects", tags=["projects"])


def received_file_names(body: Any) -> list[Any]:
    """Best-effort file names from a raw request body that failed validation."""
    if not isinstance(body, dict) or not isinstance(body.get("files"), list):
        return []
    return [item.get("name") if isinstance(item, dict) else None for item in body["files"]]


def deploy_error_payload(exc: DeploymentError, names: list[Any]) -> dict[str, Any]:
    return {
        "success": False,
        **exc.to_dict(),
        "receivedFiles": names,
        "debug": {
            "filesProvided": bool(names),
            "fileCount": len(names),
            "fileNames": names,
        },
    }


@router.post("", response_model=None)
async def deploy_project(
    request: DeployRequest,
    deploy: DeploymentManager = Depends(get_deploy_manager),
) -> dict[str, Any] | JSONResponse:
    names = request.file_names()
    logger.info("Received %s file(s): %s", len(names), names)
    try:
        report = await run_in_threadpool(deploy.deploy, request.files)
    except DeploymentError as exc:
        logger.warning("Deployment failed: %s %s", exc.kind, exc.message)
        return JSONResponse(status_code=exc.status_code, content=deploy_error_payload(exc, names))
    return {"success": True, **report.to_payload()}


@router.get("")
async def list_projects(
    deploy: DeploymentManager = Depends(get_deploy_manager),
) -> dict[str, list[dict[str, Any]]]:
    return {"items": [report.to_payload() for report in deploy.list()]}


@router.get("/{project_id}")
async def project_status(
    project_id: str,
    deploy: DeploymentManager = Depends(get_deploy_manager),
) -> dict[str, Any]:
    return deploy.status(project_id).to_payload()


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def teardown_project(
    project_id: str,
    deploy: DeploymentManager = Depends(get_deploy_manager),
) -> Response:
    removed = await run_in_threadpool(deploy.teardown, project_id)
    if not removed:
        raise ProjectNotFound(project_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
