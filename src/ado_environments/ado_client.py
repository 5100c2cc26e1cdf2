from __future__ import annotations

import logging
import time
import typing as t
from dataclasses import dataclass
from urllib.parse import quote

import httpx
from rich.console import Console

log = logging.getLogger(__name__)

PROJECTS_API_VERSION = "6.0"
ENVIRONMENTS_API_VERSION = "7.1"
CHECKS_API_VERSION = "7.2-preview.1"
CONTINUATION_HEADER = "x-ms-continuationtoken"

PAGE_SIZE = 100
MAX_PAGE_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 5.0
PAGE_DELAY_SECONDS = 1.0


@dataclass
class AzureDevOpsAPIError(Exception):
    message: str
    status_code: int | None = None
    body: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple wrapper
        base = self.message
        if self.status_code:
            base += f" (status {self.status_code})"
        if self.body:
            base += f": {self.body}"
        return base


class AzureDevOpsClient:
    """
    Thin wrapper around the Azure DevOps REST API for one organization.

    Authenticates with a personal access token sent as basic auth
    (empty username, token as password).
    """

    def __init__(
        self,
        organization: str,
        token: str,
        base_url: str = "https://dev.azure.com",
        timeout: float = 30.0,
        page_size: int = PAGE_SIZE,
        max_page_attempts: int = MAX_PAGE_ATTEMPTS,
        retry_delay: float = RETRY_DELAY_SECONDS,
        page_delay: float = PAGE_DELAY_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.org_url = f"{base_url.rstrip('/')}/{quote(organization.strip('/'))}"
        self._client = httpx.Client(
            auth=("", token),
            headers={"Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self.page_size = page_size
        self._max_page_attempts = max_page_attempts
        self._retry_delay = retry_delay
        self._page_delay = page_delay

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "AzureDevOpsClient":
        return self

    def __exit__(self, *_: t.Any) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, t.Any] | None = None,
        json: t.Any = None,
    ) -> httpx.Response:
        # Check configurations hand back absolute self links.
        if path.startswith("http://") or path.startswith("https://"):
            url = path
        else:
            url = f"{self.org_url}{path}"
        try:
            response = self._client.request(method, url, params=params, json=json)
        except httpx.RequestError as exc:  # network/timeout errors
            raise AzureDevOpsAPIError(f"Request to {url} failed: {exc}") from exc

        if response.status_code >= 400:
            raise AzureDevOpsAPIError(
                f"Azure DevOps API error at {url}",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> t.Any:
        try:
            return response.json()
        except ValueError as exc:
            raise AzureDevOpsAPIError(
                f"Invalid JSON from {response.request.url}",
                status_code=response.status_code,
                body=response.text[:200],
            ) from exc

    def get_project(self, name: str) -> dict[str, t.Any]:
        response = self._request(
            "GET",
            f"/_apis/projects/{quote(name, safe='')}",
            params={"api-version": PROJECTS_API_VERSION},
        )
        return self._json(response)

    def _fetch_environment_page(
        self,
        project_id: str,
        continuation_token: str | None,
    ) -> httpx.Response:
        params: dict[str, t.Any] = {
            "api-version": ENVIRONMENTS_API_VERSION,
            "$top": self.page_size,
        }
        if continuation_token:
            params["continuationToken"] = continuation_token
        return self._request(
            "GET",
            f"/{quote(project_id, safe='')}/_apis/distributedtask/environments",
            params=params,
        )

    def list_environments(
        self,
        project_id: str,
        console: Console | None = None,
    ) -> list[dict[str, t.Any]]:
        """
        Collect every environment of a project, following continuation tokens.

        A page that keeps failing after ``max_page_attempts`` ends pagination;
        environments gathered from earlier pages are still returned.
        """
        environments: list[dict[str, t.Any]] = []
        continuation_token: str | None = None
        page = 1
        while True:
            response: httpx.Response | None = None
            for attempt in range(1, self._max_page_attempts + 1):
                try:
                    response = self._fetch_environment_page(project_id, continuation_token)
                    payload = self._json(response)
                    break
                except AzureDevOpsAPIError as exc:
                    response = None
                    if console:
                        console.print(
                            f"[yellow]Warning:[/] environments page {page} failed (attempt {attempt}/{self._max_page_attempts}): {exc}"
                        )
                    log.warning(
                        "Environments page %s failed (attempt %s/%s): %s",
                        page,
                        attempt,
                        self._max_page_attempts,
                        exc,
                    )
                    if attempt < self._max_page_attempts:
                        time.sleep(self._retry_delay)

            if response is None:
                if console:
                    console.print(
                        f"[yellow]Warning:[/] giving up on environments page {page}; keeping {len(environments)} environments fetched so far"
                    )
                log.error(
                    "Giving up on environments page %s after %s attempts; keeping %s environments fetched so far",
                    page,
                    self._max_page_attempts,
                    len(environments),
                )
                break

            items = payload.get("value") if isinstance(payload, dict) else None
            if not isinstance(items, list):
                items = None
            else:
                items = [item for item in items if isinstance(item, dict)]
            if not items:
                log.debug("Environments page %s is empty; pagination finished", page)
                break
            environments.extend(items)
            log.info("Fetched environments page %s (%s items, %s total)", page, len(items), len(environments))

            continuation_token = response.headers.get(CONTINUATION_HEADER)
            if not continuation_token:
                break
            page += 1
            time.sleep(self._page_delay)

        return list(environments)

    def query_check_configurations(
        self,
        project_id: str,
        environment_id: int | str,
        environment_name: str,
    ) -> list[dict[str, t.Any]]:
        resources = [
            {"type": "queue", "id": "1", "name": "Default"},
            {"type": "environment", "id": str(environment_id), "name": environment_name},
        ]
        response = self._request(
            "POST",
            f"/{quote(project_id, safe='')}/_apis/pipelines/checks/queryconfigurations",
            params={"$expand": "settings", "api-version": CHECKS_API_VERSION},
            json=resources,
        )
        payload = self._json(response)
        if not isinstance(payload, dict):
            raise AzureDevOpsAPIError(f"Expected object response for checks of environment {environment_name}")
        configurations = payload.get("value") or []
        if not isinstance(configurations, list):
            raise AzureDevOpsAPIError(f"Expected list of checks for environment {environment_name}")
        return configurations

    def get_check_configuration(self, url: str) -> dict[str, t.Any]:
        response = self._request("GET", url)
        return self._json(response)
