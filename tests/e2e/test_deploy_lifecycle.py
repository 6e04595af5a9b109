from __future__ import annotations

import asyncio
from pathlib import Path

from fastapi.testclient import TestClient

from pagehost.api.app import create_app
from pagehost.config import Settings
from tests.support.deploy_helpers import fetch, make_manager, port_is_bindable


def test_e2e_shutdown_tears_down_every_project(tmp_path: Path) -> None:
    manager = make_manager(tmp_path)
    app = create_app(manager=manager, settings=Settings(_env_file=None, shutdown_timeout=10.0))
    files = [
        {"name": "index.html", "content": "<h1>hi</h1>", "language": "html"},
        {"name": "app.js", "content": "console.log('hi')", "language": "javascript"},
    ]

    with TestClient(app) as client:
        ports = []
        for _ in range(2):
            response = client.post("/api/projects", json={"files": files})
            assert response.status_code == 200
            ports.append(response.json()["port"])
        for port in ports:
            assert fetch(f"http://127.0.0.1:{port}/app.js").text == "console.log('hi')"
        assert len(client.get("/health").json()["deployments"]) == 2

    assert manager.list() == []
    assert list((tmp_path / "projects").iterdir()) == []
    assert all(port_is_bindable(port) for port in ports)


def test_e2e_shutdown_runs_teardown_off_the_event_loop(tmp_path: Path) -> None:
    manager = make_manager(tmp_path)
    real_teardown_all = manager.teardown_all
    loop_running: list[bool] = []

    def recording_teardown_all(timeout: float = 10.0) -> int:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            loop_running.append(False)
        else:
            loop_running.append(True)
        return real_teardown_all(timeout)

    manager.teardown_all = recording_teardown_all  # type: ignore[method-assign]
    app = create_app(manager=manager, settings=Settings(_env_file=None))

    with TestClient(app) as client:
        response = client.post("/api/projects", json={"files": [{"name": "index.html", "content": "x"}]})
        assert response.status_code == 200

    assert loop_running == [False]
    assert manager.list() == []
