"""Pytest configuration and shared helpers for terminology-mcp-server tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
import pytest

from terminology_mcp_server.cache import TtlCache
from terminology_mcp_server.config import GatewayConfig, WhoCredentials
from terminology_mcp_server.gateway import TerminologyGateway
from terminology_mcp_server.rate_limiter import TokenBucketRateLimiter
from terminology_mcp_server.retry import RetryExecutor, RetryPolicy
from terminology_mcp_server.transport import HttpTransport

Handler = Callable[[httpx.Request], httpx.Response]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_client(
    cls: type,
    handler: Handler,
    base_url: str = "https://upstream.test",
    cache: TtlCache | None = None,
    limiter: TokenBucketRateLimiter | None = None,
    sleep: RecordingSleep | None = None,
    max_retries: int = 2,
    **kwargs: Any,
) -> Any:
    """Build an upstream client over ``httpx.MockTransport`` with instant retries."""
    name = cls._cache_namespace
    return cls(
        transport=HttpTransport(
            name, base_url=base_url, transport=httpx.MockTransport(handler)
        ),
        limiter=(
            limiter
            if limiter is not None
            else TokenBucketRateLimiter(capacity=100, refill_rate=100.0, name=name)
        ),
        cache=cache if cache is not None else TtlCache(),
        retry_executor=RetryExecutor(
            RetryPolicy(max_retries=max_retries, jitter=False),
            name=name,
            sleep=sleep or RecordingSleep(),
        ),
        **kwargs,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def build_client() -> Callable[..., Any]:
    """Factory fixture wrapping :func:`make_client`."""
    return make_client


class FakeUpstreams:
    """One ``httpx.MockTransport`` handler standing in for every upstream.

    Routes by host to canned payloads; ``fail`` maps a host to a status
    code returned for every request to it.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.fail: dict[str, int] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host in self.fail:
            return httpx.Response(self.fail[host], text="upstream failure")
        path = request.url.path
        if host == "icdaccessmanagement.who.int":
            return httpx.Response(200, json={"access_token": "who-token", "expires_in": 3600})
        if host == "id.who.int" and path.endswith("/search"):
            return httpx.Response(
                200,
                json={
                    "destinationEntities": [
                        {"id": "http://id.who.int/icd/entity/1", "theCode": "5A11", "title": "Type 2 diabetes mellitus"}
                    ]
                },
            )
        if host == "clinicaltables.nlm.nih.gov":
            return httpx.Response(
                200,
                json=[
                    1,
                    ["2345-7"],
                    None,
                    [["2345-7", "Glucose [Mass/volume] in Serum or Plasma", "Glucose", "MCnc", "Pt", "Ser/Plas"]],
                ],
            )
        if host == "rxnav.nlm.nih.gov" and path.endswith("/drugs.json"):
            return httpx.Response(
                200,
                json={"drugGroup": {"conceptGroup": [{"tty": "IN", "conceptProperties": [{"rxcui": "6809", "name": "metformin", "tty": "IN"}]}]}},
            )
        if host == "rxnav.nlm.nih.gov" and path.endswith("/approximateTerm.json"):
            return httpx.Response(
                200,
                json={"approximateGroup": {"candidate": [{"rxcui": "6809", "rxaui": "1", "name": "metformin", "score": "7", "rank": "1"}]}},
            )
        if host == "id.nlm.nih.gov" and path.endswith("/lookup/descriptor"):
            return httpx.Response(
                200,
                json=[{"resource": "http://id.nlm.nih.gov/mesh/D003924", "label": "Diabetes Mellitus, Type 2"}],
            )
        if host == "browser.ihtsdotools.org" and path.endswith("/concepts"):
            return httpx.Response(
                200,
                json={"items": [{"conceptId": "44054006", "pt": {"term": "Type 2 diabetes mellitus"}}]},
            )
        if host == "browser.ihtsdotools.org" and path.endswith("/concepts/44054006"):
            return httpx.Response(
                200,
                json={"conceptId": "44054006", "fsn": {"term": "Diabetes mellitus type 2 (disorder)"}, "pt": {"term": "Type 2 diabetes mellitus"}},
            )
        return httpx.Response(404, text="not found")


@pytest.fixture
def upstreams() -> FakeUpstreams:
    return FakeUpstreams()


@pytest.fixture
def gateway_factory(upstreams: FakeUpstreams) -> Callable[..., TerminologyGateway]:
    """Factory: gateway over ``upstreams``, optionally with WHO credentials."""

    def factory(with_who: bool = False, **overrides: Any) -> TerminologyGateway:
        credentials = WhoCredentials("client", "secret") if with_who else WhoCredentials()
        config = GatewayConfig(who_credentials=credentials, **overrides)
        return TerminologyGateway.from_config(config, http_transport=httpx.MockTransport(upstreams))

    return factory
