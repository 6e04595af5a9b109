"""Health and listing routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from pagehost.api.deps import get_deploy_manager
from pagehost.core.deploy_manager import DeploymentManager

router = APIRouter(tags=["system"])


@router.get("/health")
async def health(
    deploy: DeploymentManager = Depends(get_deploy_manager),
) -> dict[str, Any]:
    deployments = [
        {
            "projectId": report.project_id,
            "port": report.port,
            "url": report.url,
            "publicUrl": report.public_url,
            "createdAt": report.created_at.isoformat(),
        }
        for report in deploy.list()
    ]
    return {"status": "ok", "deployments": deployments}
