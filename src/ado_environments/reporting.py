from __future__ import annotations

import csv
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Sequence

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from .ado_client import AzureDevOpsAPIError, AzureDevOpsClient

log = logging.getLogger(__name__)

NOT_AVAILABLE = "N/A"
NO_APPROVERS = "No approvers"
APPROVER_SEPARATOR = "; "
APPROVAL_CHECK_TYPE = "Approval"

_APPLICATION_ID_RE = re.compile(r"^(\d+)-")
_ISO_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(?P<fraction>\d+))?(?P<tz>Z|[+-]\d{2}:?\d{2})?$"
)


@dataclass(frozen=True)
class ProjectRef:
    id: str
    name: str


@dataclass
class EnvironmentReport:
    team_project_name: str
    environment_id: int
    environment_name: str
    application_id: str
    approver_names: str
    approver_emails: str
    created_by: str
    created_on: str
    last_modified_by: str
    last_modified_on: str
    description: str


# CSV header -> EnvironmentReport attribute, in column order.
REPORT_COLUMNS = {
    "TeamProjectName": "team_project_name",
    "EnvironmentId": "environment_id",
    "EnvironmentName": "environment_name",
    "ApplicationID": "application_id",
    "ApproverNames": "approver_names",
    "ApproverEmails": "approver_emails",
    "CreatedBy": "created_by",
    "CreatedOn": "created_on",
    "LastModifiedBy": "last_modified_by",
    "LastModifiedOn": "last_modified_on",
    "Description": "description",
}


@dataclass
class ExportResult:
    project: ProjectRef
    environments_seen: int
    records: list[EnvironmentReport]
    environments_with_approvals: int
    output_path: Path | None


def _text_or_default(value: object, default: str = NOT_AVAILABLE) -> str:
    if value is None:
        return default
    text = str(value)
    return text if text.strip() else default


def _identity_name(identity: object) -> str:
    if not isinstance(identity, dict):
        return NOT_AVAILABLE
    return _text_or_default(identity.get("displayName"))


def extract_application_id(environment_name: str | None) -> str:
    match = _APPLICATION_ID_RE.match(environment_name or "")
    return match.group(1) if match else NOT_AVAILABLE


def _parse_timestamp(value: str) -> datetime | None:
    match = _ISO_TIMESTAMP_RE.match(value.strip())
    if not match:
        return None
    # The service emits up to 7 fractional digits; datetime takes 6.
    fraction = (match.group("fraction") or "0")[:6].ljust(6, "0")
    tz = match.group("tz") or ""
    if tz == "Z":
        tz = "+00:00"
    elif tz and ":" not in tz:
        tz = f"{tz[:3]}:{tz[3:]}"
    try:
        return datetime.fromisoformat(f"{match.group('base')}.{fraction}{tz}")
    except ValueError:
        return None


def format_timestamp(value: object) -> str:
    """Render a service timestamp as ``M/d/yyyy h:mm:ss AM``; missing values become ``N/A``."""
    if isinstance(value, datetime):
        moment: datetime | None = value
    else:
        text = _text_or_default(value, "")
        if not text:
            return NOT_AVAILABLE
        moment = _parse_timestamp(text)
        if moment is None:
            log.debug("Unrecognised timestamp %r; passing it through", text)
            return text
    hour = moment.hour % 12 or 12
    meridiem = "AM" if moment.hour < 12 else "PM"
    return f"{moment.month}/{moment.day}/{moment.year} {hour}:{moment.minute:02d}:{moment.second:02d} {meridiem}"


def join_approvers(approvers: Sequence[dict], key: str) -> str:
    if not approvers:
        return NO_APPROVERS
    return APPROVER_SEPARATOR.join(_text_or_default(a.get(key) if isinstance(a, dict) else None) for a in approvers)


def build_environment_report(
    project: ProjectRef,
    environment: dict,
    approvers: Sequence[dict],
) -> EnvironmentReport:
    name = environment.get("name") or ""
    return EnvironmentReport(
        team_project_name=project.name,
        environment_id=environment.get("id"),
        environment_name=name,
        application_id=extract_application_id(name),
        approver_names=join_approvers(approvers, "displayName"),
        approver_emails=join_approvers(approvers, "uniqueName"),
        created_by=_identity_name(environment.get("createdBy")),
        created_on=format_timestamp(environment.get("createdOn")),
        last_modified_by=_identity_name(environment.get("lastModifiedBy")),
        last_modified_on=format_timestamp(environment.get("lastModifiedOn")),
        description=_text_or_default(environment.get("description")),
    )


def resolve_project(client: AzureDevOpsClient, project_name: str) -> ProjectRef:
    project = client.get_project(project_name)
    project_id = project.get("id") if isinstance(project, dict) else None
    if not project_id:
        raise AzureDevOpsAPIError(f"Project lookup for '{project_name}' returned no id")
    return ProjectRef(id=str(project_id), name=project.get("name") or project_name)


def _check_type_name(config: dict) -> str | None:
    check_type = config.get("type")
    return check_type.get("name") if isinstance(check_type, dict) else None


def _settings_approvers(detail: object) -> list | None:
    """Approvers listed on an approval check, or None when the payload is not shaped as expected."""
    if not isinstance(detail, dict):
        return None
    settings = detail.get("settings")
    if settings is None:
        return []
    if not isinstance(settings, dict):
        return None
    approvers = settings.get("approvers")
    if approvers is None:
        return []
    if not isinstance(approvers, list):
        return None
    return approvers


def fetch_environment_approvers(
    client: AzureDevOpsClient,
    project: ProjectRef,
    environment: dict,
    console: Console | None = None,
) -> tuple[list[dict], int]:
    """
    Return the approvers of every approval check on an environment and the
    number of approval checks found.

    Failures are logged and skipped: a failed checks query yields no
    approvers, a failed check detail drops only that check.
    """
    env_id = environment.get("id")
    env_name = environment.get("name") or ""
    approvers: list[dict] = []

    try:
        configurations = client.query_check_configurations(project.id, env_id, env_name)
    except AzureDevOpsAPIError as exc:
        if console:
            console.print(f"[yellow]Warning:[/] could not fetch checks for environment {env_name} ({env_id}): {exc}")
        log.warning("Could not fetch checks for environment %s (%s): %s", env_name, env_id, exc)
        return approvers, 0

    approval_checks = [
        config
        for config in configurations
        if isinstance(config, dict) and _check_type_name(config) == APPROVAL_CHECK_TYPE
    ]
    log.debug("Environment %s (%s) has %s approval checks", env_name, env_id, len(approval_checks))

    for check in approval_checks:
        check_url = check.get("url")
        if not check_url or not isinstance(check_url, str):
            log.warning("Approval check %s on environment %s has no url; skipping", check.get("id"), env_name)
            continue
        try:
            detail = client.get_check_configuration(check_url)
        except AzureDevOpsAPIError as exc:
            if console:
                console.print(
                    f"[yellow]Warning:[/] could not fetch approval check {check.get('id')} for environment {env_name} ({env_id}): {exc}"
                )
            log.warning("Could not fetch approval check %s for environment %s (%s): %s", check.get("id"), env_name, env_id, exc)
            continue
        check_approvers = _settings_approvers(detail)
        if check_approvers is None:
            if console:
                console.print(
                    f"[yellow]Warning:[/] approval check {check.get('id')} for environment {env_name} ({env_id}) has unreadable settings; skipping"
                )
            log.warning("Approval check %s for environment %s (%s) has unreadable settings; skipping", check.get("id"), env_name, env_id)
            continue
        approvers.extend(check_approvers)

    return approvers, len(approval_checks)


def write_environment_report(records: Sequence[EnvironmentReport], destination: Path | str) -> Path | None:
    """Write all rows in one go; returns None without touching disk when there is nothing to write."""
    if not records:
        log.warning("No environment records to write; skipping %s", destination)
        return None
    dest_path = Path(destination)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    _write_csv(
        dest_path,
        list(REPORT_COLUMNS),
        ({header: getattr(record, attr) for header, attr in REPORT_COLUMNS.items()} for record in records),
    )
    log.info("Environment report written to %s with %s rows", dest_path, len(records))
    return dest_path


def _write_csv(path: Path, fieldnames: list[str], rows: Iterable[dict[str, object]]) -> None:
    with path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)


def export_environments(
    client: AzureDevOpsClient,
    project_name: str,
    destination: Path,
    console: Console | None = None,
) -> ExportResult:
    console = console or Console(stderr=True)

    project = resolve_project(client, project_name)
    console.print(f"Resolved project: [bold]{project.name}[/] (id={project.id})")
    log.info("Resolved project %s to id %s", project_name, project.id)

    environments = client.list_environments(project.id, console=console)
    console.print(f"Found {len(environments)} environments")
    if not environments:
        console.print(f"[yellow]Warning:[/] no environments found in project {project.name}; no report written.")
        log.warning("No environments found in project %s", project.name)
        return ExportResult(
            project=project,
            environments_seen=0,
            records=[],
            environments_with_approvals=0,
            output_path=None,
        )

    records: list[EnvironmentReport] = []
    with_approvals = 0
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        transient=True,
        console=console,
    ) as progress:
        task = progress.add_task("Resolving approval checks...", total=len(environments))
        for environment in environments:
            approvers, check_count = fetch_environment_approvers(client, project, environment, console=console)
            if check_count:
                with_approvals += 1
            records.append(build_environment_report(project, environment, approvers))
            progress.advance(task)

    output_path = write_environment_report(records, destination)
    if output_path is None:
        console.print("[yellow]Warning:[/] no records to export; no report written.")

    return ExportResult(
        project=project,
        environments_seen=len(environments),
        records=records,
        environments_with_approvals=with_approvals,
        output_path=output_path,
    )
