import socket
from types import SimpleNamespace

import httpx
import pytest

from scalar_proxy.guard import access_guard
from scalar_proxy.proxy import forwarder

PUBLIC_ADDRESS = "93.184.215.14"


@pytest.fixture
def resolver(monkeypatch):
    """Replace the system resolver with a table of hostname -> addresses.

    Unknown hostnames fail the way getaddrinfo does for NXDOMAIN.
    """
    table = {
        "api.example.com": [PUBLIC_ADDRESS],
        "cdn.example.com": [PUBLIC_ADDRESS, "2606:2800:21f:cb07:6820:80da:af6b:8b2c"],
    }
    calls = []

    async def fake_resolve(hostname):
        calls.append(hostname)
        if hostname not in table:
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        return list(table[hostname])

    monkeypatch.setattr(access_guard, "resolve_host", fake_resolve)
    return SimpleNamespace(table=table, calls=calls)


@pytest.fixture
def upstream(monkeypatch):
    """Route the forwarder's outbound calls to an in-process handler.

    With no handler set, any outbound call fails the test.
    """
    state = SimpleNamespace(handler=None, requests=[])

    def dispatch(request: httpx.Request) -> httpx.Response:
        state.requests.append(request)
        if state.handler is None:
            pytest.fail(f"Unexpected outbound call to {request.url}")
        return state.handler(request)

    monkeypatch.setattr(
        forwarder,
        "build_client",
        lambda: httpx.AsyncClient(
            transport=httpx.MockTransport(dispatch), follow_redirects=False
        ),
    )
    return state
