from __future__ import annotations

import io

import httpx
import pytest
from rich.console import Console

from ado_environments import ado_client
from ado_environments.ado_client import AzureDevOpsClient


@pytest.fixture
def sleeps(monkeypatch) -> list[float]:
    recorded: list[float] = []
    monkeypatch.setattr(ado_client.time, "sleep", recorded.append)
    return recorded


@pytest.fixture
def console() -> Console:
    return Console(file=io.StringIO(), width=200)


@pytest.fixture
def make_client():
    clients: list[AzureDevOpsClient] = []

    def factory(handler) -> AzureDevOpsClient:
        client = AzureDevOpsClient(
            organization="contoso",
            token="secret-pat",
            transport=httpx.MockTransport(handler),
        )
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()
