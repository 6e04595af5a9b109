from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from pagehost.api.app import create_app
from pagehost.config import Settings
from tests.support.deploy_helpers import make_manager, site


def test_health_endpoint_lists_deployments(tmp_path: Path) -> None:
    manager = make_manager(tmp_path)
    client = TestClient(create_app(manager=manager, settings=Settings(_env_file=None)))
    try:
        empty = client.get("/health")
        assert empty.status_code == 200
        assert empty.json() == {"status": "ok", "deployments": []}

        report = manager.deploy(site(("index.html", "x")))
        listed = client.get("/health").json()["deployments"]
        assert len(listed) == 1
        assert listed[0]["projectId"] == report.project_id
        assert listed[0]["url"] == report.url
        assert listed[0]["publicUrl"] is None
        assert listed[0]["createdAt"] == report.created_at.isoformat()
    finally:
        manager.teardown_all()
