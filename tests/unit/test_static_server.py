from __future__ import annotations

from pathlib import Path

import pytest

from pagehost.core.errors import BindError
from pagehost.core.port_allocator import PortAllocator, bind_socket
from pagehost.core.static_server import SITE_HEADERS, StaticServer
from tests.support.deploy_helpers import fetch, port_is_bindable

FLOOR = 47700


def _site(tmp_path: Path) -> Path:
    directory = tmp_path / "site"
    (directory / "js").mkdir(parents=True)
    (directory / "index.html").write_text("<h1>hi</h1>", encoding="utf-8")
    (directory / "js" / "app.js").write_text("console.log(1)", encoding="utf-8")
    return directory


def test_serves_files_with_site_headers(tmp_path: Path) -> None:
    server = StaticServer()
    port = PortAllocator(floor=FLOOR).next_available()
    handle = server.start(_site(tmp_path), port, project_id="p1")
    try:
        root = fetch(f"http://127.0.0.1:{port}/")
        script = fetch(f"http://127.0.0.1:{port}/js/app.js")
    finally:
        server.stop(handle)

    assert root.status_code == 200
    assert root.text == "<h1>hi</h1>"
    assert script.text == "console.log(1)"
    for header, value in SITE_HEADERS.items():
        assert root.headers[header] == value
    assert "etag" not in root.headers
    assert "last-modified" not in root.headers


def test_unknown_paths_fall_back_to_entry_document(tmp_path: Path) -> None:
    server = StaticServer()
    port = PortAllocator(floor=FLOOR).next_available()
    handle = server.start(_site(tmp_path), port, project_id="p1")
    try:
        response = fetch(f"http://127.0.0.1:{port}/some/client/route")
    finally:
        handle.close()

    assert response.status_code == 200
    assert response.text == "<h1>hi</h1>"


def test_missing_entry_document_yields_404(tmp_path: Path) -> None:
    directory = tmp_path / "bare"
    directory.mkdir()
    (directory / "styles.css").write_text("body{}", encoding="utf-8")
    server = StaticServer()
    port = PortAllocator(floor=FLOOR).next_available()
    handle = server.start(directory, port, project_id="p1")
    try:
        missing = fetch(f"http://127.0.0.1:{port}/nope.html")
        present = fetch(f"http://127.0.0.1:{port}/styles.css")
    finally:
        handle.close()

    assert missing.status_code == 404
    assert present.text == "body{}"


def test_bind_error_when_port_taken(tmp_path: Path) -> None:
    port = PortAllocator(floor=FLOOR).next_available()
    holder = bind_socket("127.0.0.1", port)
    try:
        with pytest.raises(BindError) as info:
            StaticServer().start(_site(tmp_path), port, project_id="p1")
    finally:
        holder.close()
    assert info.value.port == port


def test_stop_is_idempotent_and_frees_port(tmp_path: Path) -> None:
    server = StaticServer()
    port = PortAllocator(floor=FLOOR).next_available()
    handle = server.start(_site(tmp_path), port, project_id="p1")
    assert handle.running is True

    handle.close()
    handle.close()

    assert handle.running is False
    assert port_is_bindable(port)
