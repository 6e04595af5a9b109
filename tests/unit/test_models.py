from pathlib import Path

import pytest

from pagehost.models.project import DeployFile, Project, ProjectStatus, TunnelStatus


def test_project_defaults() -> None:
    project = Project(directory=Path("/tmp/demo"))
    assert project.status is ProjectStatus.PROVISIONING
    assert project.tunnel_status is TunnelStatus.DISABLED
    assert project.public_url is None
    assert project.id.startswith("project_")


def test_project_ids_are_unique() -> None:
    ids = {Project(directory=Path("/tmp/demo")).id for _ in range(200)}
    assert len(ids) == 200


def test_status_only_moves_forward() -> None:
    project = Project(directory=Path("/tmp/demo"))
    project.advance(ProjectStatus.LIVE)
    project.advance(ProjectStatus.TEARING_DOWN)

    with pytest.raises(ValueError, match="Cannot move project"):
        project.advance(ProjectStatus.LIVE)

    project.advance(ProjectStatus.GONE)
    assert project.status is ProjectStatus.GONE


def test_public_url_confirmed_only_for_confirmed_tunnels() -> None:
    project = Project(directory=Path("/tmp/demo"), tunnel_status=TunnelStatus.INFERRED)
    assert project.public_url_confirmed is False
    project.tunnel_status = TunnelStatus.CONFIRMED
    assert project.public_url_confirmed is True


def test_deploy_file_normalized_name() -> None:
    assert DeployFile(name=" Index.HTML ").normalized_name == "index.html"
    assert DeployFile().normalized_name == ""
