from __future__ import annotations

import csv
import functools
from datetime import datetime

import httpx
import pytest
import typer
from typer.testing import CliRunner

from ado_environments import cli
from ado_environments.ado_client import AzureDevOpsClient

runner = CliRunner()

BASE_ARGS = ["export", "--token", "secret-pat", "--organization", "contoso", "--project", "Payments"]


def _service(environments: list[dict], project_status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/contoso/_apis/projects/Payments":
            if project_status != 200:
                return httpx.Response(project_status, text="TF200016: project does not exist")
            return httpx.Response(200, json={"id": "proj-1", "name": "Payments"})
        if path.endswith("/_apis/distributedtask/environments"):
            return httpx.Response(200, json={"value": environments})
        if path.endswith("/_apis/pipelines/checks/queryconfigurations"):
            return httpx.Response(200, json={"value": []})
        return httpx.Response(404)

    return handler


@pytest.fixture
def reports_dir(tmp_path, monkeypatch):
    target = tmp_path / "reports"
    monkeypatch.setattr(cli, "REPORTS_DIR", target)
    return target


@pytest.fixture
def use_service(monkeypatch, sleeps):
    def install(handler) -> None:
        factory = functools.partial(AzureDevOpsClient, transport=httpx.MockTransport(handler))
        monkeypatch.setattr(cli, "AzureDevOpsClient", factory)

    return install


def test_default_report_name():
    assert cli._default_report_name(datetime(2024, 3, 5, 14, 7, 9)) == "AzureDevOpsEnvironments_20240305_140709.csv"


@pytest.mark.parametrize("output, expected", [("weekly", "weekly.csv"), ("weekly.CSV", "weekly.CSV"), ("q3.csv", "q3.csv")])
def test_report_filename_appends_csv(output, expected):
    assert cli._report_filename(output) == expected


def test_report_filename_rejects_backslash():
    with pytest.raises(typer.BadParameter):
        cli._report_filename("a\\b.csv")


def test_export_writes_report(reports_dir, use_service):
    use_service(_service([{"id": 1, "name": "042-billing"}, {"id": 2, "name": "shared-prod"}]))

    result = runner.invoke(cli.app, BASE_ARGS + ["--output", "weekly"])

    assert result.exit_code == 0, result.output
    report = reports_dir / "weekly.csv"
    with open(report, newline="", encoding="utf-8") as fh:
        rows = list(csv.DictReader(fh))
    assert [row["ApplicationID"] for row in rows] == ["042", "N/A"]
    assert "Records exported: 2" in result.output


def test_export_uses_timestamped_default_name(reports_dir, use_service):
    use_service(_service([{"id": 1, "name": "dev"}]))

    result = runner.invoke(cli.app, BASE_ARGS)

    assert result.exit_code == 0, result.output
    files = list(reports_dir.glob("AzureDevOpsEnvironments_*_*.csv"))
    assert len(files) == 1


@pytest.mark.parametrize("output", ["../elsewhere.csv", "nested/report.csv", "a\\b.csv"])
def test_export_rejects_path_in_output(reports_dir, use_service, output):
    use_service(_service([{"id": 1, "name": "dev"}]))

    result = runner.invoke(cli.app, BASE_ARGS + ["--output", output])

    assert result.exit_code == 2
    assert not reports_dir.exists()


def test_export_fails_when_reports_dir_cannot_be_created(tmp_path, monkeypatch, use_service):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("occupied", encoding="utf-8")
    monkeypatch.setattr(cli, "REPORTS_DIR", blocker / "reports")
    use_service(_service([{"id": 1, "name": "dev"}]))

    result = runner.invoke(cli.app, BASE_ARGS)

    assert result.exit_code == 1
    assert "Could not create reports directory" in result.output


def test_export_fails_when_project_cannot_be_resolved(reports_dir, use_service):
    use_service(_service([], project_status=404))

    result = runner.invoke(cli.app, BASE_ARGS)

    assert result.exit_code == 1
    assert "Could not resolve project" in result.output
    assert list(reports_dir.iterdir()) == []


def test_export_without_environments_exits_cleanly(reports_dir, use_service):
    use_service(_service([]))

    result = runner.invoke(cli.app, BASE_ARGS)

    assert result.exit_code == 0, result.output
    assert "no environments found" in result.output
    assert list(reports_dir.iterdir()) == []


def test_export_requires_token(reports_dir, monkeypatch):
    monkeypatch.delenv("AZURE_DEVOPS_PAT", raising=False)

    result = runner.invoke(cli.app, ["export", "--organization", "contoso", "--project", "Payments"])

    assert result.exit_code != 0


def test_features_lists_parameters():
    result = runner.invoke(cli.app, ["features"])

    assert result.exit_code == 0
    assert "--organization" in result.output
