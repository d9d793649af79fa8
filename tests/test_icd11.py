"""Tests for the ICD-11 client: bearer auth, 401 handling, parsing, caching."""

from __future__ import annotations

import httpx
import pytest

from terminology_mcp_server.cache import CachePrefix, TtlCache
from terminology_mcp_server.clients.icd11 import Icd11Client
from terminology_mcp_server.credentials import TOKEN_CACHE_KEY, OAuthTokenManager
from terminology_mcp_server.errors import AuthExpiredError, UpstreamApiError
from terminology_mcp_server.retry import RetryExecutor, RetryPolicy
from terminology_mcp_server.transport import HttpTransport


BASE = "https://id.who.int/icd"
TOKEN_URL = "https://icdaccessmanagement.who.int/connect/token"
RELEASE = "/icd/release/11/2024-01/mms"

CHOLERA = {
    "@id": "http://id.who.int/icd/release/11/2024-01/mms/257068234",
    "code": "1A00",
    "title": {"@language": "en", "@value": "Cholera"},
    "definition": {"@value": "An acute infection of the small intestine."},
    "classKind": "category",
    "browserUrl": "https://icd.who.int/browse/2024-01/mms/en#257068234",
    "parent": ["http://id.who.int/icd/release/11/2024-01/mms/135352227"],
    "child": [],
    "exclusion": [{"label": {"@value": "Gastroenteritis"}}],
}

PARENT = {
    "@id": "http://id.who.int/icd/release/11/2024-01/mms/135352227",
    "codeRange": "1A00-1A0Z",
    "title": {"@value": "Intestinal bacterial infections"},
    "classKind": "block",
}


class WhoApi:
    """Mock WHO API covering the token endpoint and the MMS linearization."""

    def __init__(self) -> None:
        self.token_requests = 0
        self.api_requests: list[httpx.Request] = []
        self.reject_next = 0
        self.token_status: int | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/connect/token":
            self.token_requests += 1
            if self.token_status is not None:
                return httpx.Response(self.token_status, text="unavailable")
            return httpx.Response(
                200, json={"access_token": f"tok-{self.token_requests}", "expires_in": 3600}
            )
        self.api_requests.append(request)
        if self.reject_next:
            self.reject_next -= 1
            return httpx.Response(401, text="unauthorized")
        path = request.url.path
        if path == f"{RELEASE}/search":
            return httpx.Response(
                200,
                json={
                    "error": False,
                    "destinationEntities": [
                        {
                            "id": CHOLERA["@id"],
                            "theCode": "1A00",
                            "title": "Cholera",
                            "score": 0.98,
                            "isLeaf": True,
                            "chapter": "01",
                        },
                        {"id": PARENT["@id"], "title": "Intestinal bacterial infections"},
                    ],
                },
            )
        if path == f"{RELEASE}/codeinfo/1A00":
            return httpx.Response(200, json=CHOLERA)
        if path == f"{RELEASE}/135352227":
            return httpx.Response(200, json=PARENT)
        if path == f"{RELEASE}/257068234":
            return httpx.Response(200, json=CHOLERA)
        if path == RELEASE:
            return httpx.Response(200, json={"child": [PARENT["@id"], CHOLERA["@id"]]})
        if path == f"{RELEASE}/codeinfo/1A00/postcoordination":
            return httpx.Response(
                200,
                json={
                    "postcoordinationScale": [
                        {
                            "axisName": "http://id.who.int/icd/schema/severity",
                            "requiredPostcoordination": "false",
                            "allowMultipleValues": "AllowAlways",
                            "scaleEntity": ["http://id.who.int/icd/entity/1"],
                        }
                    ]
                },
            )
        return httpx.Response(404, text="not found")


@pytest.fixture
def who_client(build_client, no_sleep):
    """Factory: ICD-11 client and token manager sharing one mock WHO API."""

    def factory(api, cache: TtlCache | None = None, token_retries: int = 0) -> Icd11Client:
        if cache is None:
            cache = TtlCache()
        token_manager = OAuthTokenManager(
            client_id="id",
            client_secret="secret",
            token_url=TOKEN_URL,
            cache=cache,
            transport=HttpTransport("who-token", transport=httpx.MockTransport(api)),
            retry_executor=RetryExecutor(
                RetryPolicy(max_retries=token_retries, jitter=False), sleep=no_sleep
            ),
        )
        return build_client(
            Icd11Client, api, base_url=BASE, cache=cache, token_manager=token_manager
        )

    return factory


class TestSearch:
    """Tests for Icd11Client.search."""

    @pytest.mark.asyncio
    async def test_parses_hits_and_sends_bearer_token(self, who_client) -> None:
        api = WhoApi()
        client = who_client(api)

        results = await client.search("cholera")

        assert [r.code for r in results] == ["1A00", ""]
        assert results[0].title == "Cholera"
        assert results[0].score == pytest.approx(0.98)
        assert results[0].is_leaf is True
        request = api.api_requests[0]
        assert request.headers["Authorization"] == "Bearer tok-1"
        assert request.headers["Accept-Language"] == "en"
        assert request.url.params["q"] == "cholera"

    @pytest.mark.asyncio
    async def test_max_results_truncates(self, who_client) -> None:
        client = who_client(WhoApi())
        assert len(await client.search("cholera", max_results=1)) == 1

    @pytest.mark.asyncio
    async def test_results_cached_and_token_reused(self, who_client) -> None:
        api = WhoApi()
        client = who_client(api)
        await client.search("cholera")
        await client.search("cholera")
        await client.search("typhoid")
        assert len(api.api_requests) == 2
        assert api.token_requests == 1

    @pytest.mark.asyncio
    async def test_cache_key_ignores_query_case(self, who_client) -> None:
        api = WhoApi()
        client = who_client(api)
        await client.search("cholera")
        await client.search("  Cholera ")
        assert len(api.api_requests) == 1

    @pytest.mark.asyncio
    async def test_token_lives_in_shared_cache(self, who_client) -> None:
        cache = TtlCache()
        client = who_client(WhoApi(), cache)
        await client.search("cholera")
        assert cache.has(CachePrefix.TOKEN, TOKEN_CACHE_KEY)
        assert client._cache is cache

    @pytest.mark.asyncio
    async def test_error_flag_in_payload(self, who_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/connect/token":
                return httpx.Response(200, json={"access_token": "t"})
            return httpx.Response(200, json={"error": True, "errorMessage": "bad query"})

        client = who_client(handler)
        with pytest.raises(UpstreamApiError, match="bad query"):
            await client.search("???")

    @pytest.mark.asyncio
    async def test_blank_query_makes_no_request(self, who_client) -> None:
        api = WhoApi()
        assert await who_client(api).search("   ") == []
        assert api.api_requests == []


class TestUnauthorized:
    """Tests for 401 handling."""

    @pytest.mark.asyncio
    async def test_401_evicts_token_and_is_not_retried(self, who_client) -> None:
        api = WhoApi()
        api.reject_next = 1
        cache = TtlCache()
        client = who_client(api, cache)

        with pytest.raises(AuthExpiredError) as exc_info:
            await client.search("cholera")

        assert exc_info.value.status_code == 401
        assert len(api.api_requests) == 1
        assert api.token_requests == 1
        assert not cache.has(CachePrefix.TOKEN, TOKEN_CACHE_KEY)

    @pytest.mark.asyncio
    async def test_token_exchange_retried_only_by_its_own_policy(
        self, who_client, no_sleep
    ) -> None:
        api = WhoApi()
        api.token_status = 503
        client = who_client(api, token_retries=3)

        with pytest.raises(UpstreamApiError) as exc_info:
            await client.search("cholera")

        assert exc_info.value.status_code == 503
        assert api.token_requests == 4
        assert api.api_requests == []
        assert len(no_sleep.delays) == 3

    @pytest.mark.asyncio
    async def test_next_call_obtains_fresh_token(self, who_client) -> None:
        api = WhoApi()
        api.reject_next = 1
        client = who_client(api)

        with pytest.raises(AuthExpiredError):
            await client.search("cholera")
        await client.search("cholera")

        assert api.token_requests == 2
        assert api.api_requests[-1].headers["Authorization"] == "Bearer tok-2"


class TestLookup:
    """Tests for lookup, hierarchy, chapters, and postcoordination."""

    @pytest.mark.asyncio
    async def test_lookup_by_code(self, who_client) -> None:
        entity = await who_client(WhoApi()).lookup("1A00")
        assert entity is not None
        assert entity.code == "1A00"
        assert entity.title == "Cholera"
        assert entity.definition.startswith("An acute infection")
        assert entity.exclusions == ["Gastroenteritis"]

    @pytest.mark.asyncio
    async def test_lookup_by_uri_upgrades_to_https(self, who_client) -> None:
        api = WhoApi()
        entity = await who_client(api).lookup(CHOLERA["@id"])
        assert entity is not None and entity.code == "1A00"
        assert api.api_requests[0].url.scheme == "https"

    @pytest.mark.asyncio
    async def test_unknown_code_returns_none_and_is_cached(self, who_client) -> None:
        api = WhoApi()
        client = who_client(api)
        assert await client.lookup("ZZ99") is None
        assert await client.lookup("ZZ99") is None
        assert len(api.api_requests) == 1

    @pytest.mark.asyncio
    async def test_parents(self, who_client) -> None:
        parents = await who_client(WhoApi()).get_hierarchy("1A00", "parents")
        assert [p.code_range for p in parents] == ["1A00-1A0Z"]

    @pytest.mark.asyncio
    async def test_children_of_leaf(self, who_client) -> None:
        assert await who_client(WhoApi()).get_hierarchy("1A00", "children") == []

    @pytest.mark.asyncio
    async def test_chapters(self, who_client) -> None:
        chapters = await who_client(WhoApi()).get_chapters()
        assert [c.title for c in chapters] == ["Intestinal bacterial infections", "Cholera"]

    @pytest.mark.asyncio
    async def test_postcoordination(self, who_client) -> None:
        axes = await who_client(WhoApi()).get_postcoordination("1A00")
        assert len(axes) == 1
        assert axes[0].axis_name.endswith("severity")
        assert axes[0].required is False
        assert axes[0].allow_multiple_values is True
