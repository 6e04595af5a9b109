"""Shared API dependency providers."""

from __future__ import annotations

from fastapi import Request

from pagehost.core.deploy_manager import DeploymentManager


def get_deploy_manager(request: Request) -> DeploymentManager:
    manager: DeploymentManager = request.app.state.deploy_manager
    return manager
