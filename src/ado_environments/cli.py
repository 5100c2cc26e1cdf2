from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from dotenv import load_dotenv

from .ado_client import AzureDevOpsAPIError, AzureDevOpsClient
from .reporting import export_environments

LOG_LEVEL = os.getenv("ADO_ENV_REPORT_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s:%(lineno)d %(message)s",
)
log = logging.getLogger(__name__)

DOTENV_PATH = Path(os.getenv("ADO_ENV_REPORT_DOTENV", ".env"))
if DOTENV_PATH.exists():
    load_dotenv(dotenv_path=DOTENV_PATH, override=False)
    log.info("Loaded environment variables from %s", DOTENV_PATH)

REPORTS_DIR = Path(__file__).resolve().parent / "reports"
DEFAULT_FILENAME_PREFIX = "AzureDevOpsEnvironments"

console = Console()
app = typer.Typer(add_completion=False, help="Report Azure DevOps environments and their approval checks.")


def _default_report_name(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"{DEFAULT_FILENAME_PREFIX}_{now.strftime('%Y%m%d')}_{now.strftime('%H%M%S')}.csv"


def _report_filename(output: str | None) -> str:
    if not output:
        return _default_report_name()
    if "/" in output or "\\" in output:
        raise typer.BadParameter(
            f"'{output}' must be a bare filename; reports are always written under {REPORTS_DIR}",
            param_hint="--output",
        )
    return output if output.lower().endswith(".csv") else f"{output}.csv"


@app.command("features")
def list_features() -> None:
    """List supported features and parameters."""
    console.print("[bold]Features[/]")
    console.print("[cyan]*[/] Resolves a project by name and lists every environment (continuation-token paging)")
    console.print("[cyan]*[/] Retries failed environment pages and keeps partial results when a page keeps failing")
    console.print("[cyan]*[/] Collects approvers from every Approval check on each environment (best effort)")
    console.print("[cyan]*[/] Derives application ids from environment names like 042-billing")
    console.print("[cyan]*[/] Writes one CSV row per environment under the reports directory")
    console.print()
    console.print("[bold]Parameters[/]")
    console.print("[green]>[/] --token: Azure DevOps PAT with environment and check read access (required)")
    console.print("[green]>[/] --organization: Azure DevOps organization name (required)")
    console.print("[green]>[/] --project: Project name, case-sensitive (required)")
    console.print("[green]>[/] --output: Bare CSV filename (optional; defaults to a timestamped name)")
    console.print("[green]>[/] --base-url: Service URL if not using dev.azure.com")


@app.command()
def export(
    token: str = typer.Option(
        None,
        "--token",
        envvar="AZURE_DEVOPS_PAT",
        help="Azure DevOps personal access token.",
    ),
    organization: str = typer.Option(
        None,
        "--organization",
        "-g",
        envvar="AZURE_DEVOPS_ORG",
        help="Azure DevOps organization name. Can be set via AZURE_DEVOPS_ORG.",
    ),
    project: str = typer.Option(
        None,
        "--project",
        "-p",
        envvar="AZURE_DEVOPS_PROJECT",
        help="Project name (exact, case-sensitive). Can be set via AZURE_DEVOPS_PROJECT.",
    ),
    output: str | None = typer.Option(
        None,
        "--output",
        "-o",
        envvar="ADO_ENV_REPORT_FILE",
        help="Bare CSV filename written under the reports directory; '.csv' is appended when missing.",
    ),
    base_url: str = typer.Option(
        "https://dev.azure.com",
        "--base-url",
        envvar="AZURE_DEVOPS_BASE_URL",
        help="Azure DevOps base URL (defaults to dev.azure.com). Can be set via AZURE_DEVOPS_BASE_URL.",
    ),
) -> None:
    """
    List every environment in PROJECT with its approvers and write them to a CSV report.
    """
    if not token:
        raise typer.BadParameter("Azure DevOps token is required via --token or env AZURE_DEVOPS_PAT")
    if not organization:
        raise typer.BadParameter("Organization is required via --organization or env AZURE_DEVOPS_ORG")
    if not project:
        raise typer.BadParameter("Project is required via --project or env AZURE_DEVOPS_PROJECT")

    filename = _report_filename(output)
    try:
        REPORTS_DIR.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        console.print(f"[red]Could not create reports directory {REPORTS_DIR}:[/] {exc}")
        raise typer.Exit(code=1) from exc
    destination = REPORTS_DIR / filename
    log.info("Report destination %s", destination)

    try:
        with AzureDevOpsClient(organization=organization, token=token, base_url=base_url) as client:
            console.print(f"[cyan]Organization:[/] {client.org_url}")
            result = export_environments(
                client=client,
                project_name=project,
                destination=destination,
                console=console,
            )
    except AzureDevOpsAPIError as exc:
        console.print(f"[red]Could not resolve project {project}:[/] {exc}")
        raise typer.Exit(code=1) from exc
    except Exception as exc:  # pragma: no cover - safety net
        console.print(f"[red]Unexpected error:[/] {exc}")
        raise typer.Exit(code=1) from exc

    if result.output_path is None:
        console.print("\n[bold yellow]Export finished without a report.[/]")
        console.print(f"Environments: {result.environments_seen}, Records: {len(result.records)}")
        return

    console.print("\n[bold green]Export complete.[/]")
    console.print(
        f"Project: {result.project.name} (id={result.project.id}), Environments: {result.environments_seen}, "
        f"Records exported: {len(result.records)}, With approval checks: {result.environments_with_approvals}"
    )
    if result.environments_seen != len(result.records):
        console.print("[yellow]Warning:[/] exported record count differs from environments seen.")
        log.warning("Environments seen (%s) != records exported (%s)", result.environments_seen, len(result.records))
    console.print(f"[blue]Report saved to {result.output_path}[/]")


if __name__ == "__main__":
    app()
