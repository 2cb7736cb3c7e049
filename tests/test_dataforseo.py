"""Tests for the DataForSEO maps client: request shape, parsing, retries, errors."""

import base64
import json

import httpx
import pytest

from geogrid.integrations.dataforseo import (
    ConfigurationError,
    DataForSEOClient,
    DataForSEOError,
    ErrorCategory,
    classify_error,
    parse_maps_items,
)
from geogrid.utils.rate_limiter import RateLimiter

COORDS = "32.7357000,-97.0891000,14"


def _payload(items=None, status_code=20000, task_status=20000, cost=0.002, message="Ok."):
    return {
        "status_code": status_code,
        "status_message": message,
        "cost": cost,
        "tasks": [{
            "status_code": task_status,
            "status_message": message,
            "result": [{"items": items or []}],
        }],
    }


def _items():
    return [
        {
            "type": "maps_search",
            "title": "Smile Studio",
            "rank_absolute": 1,
            "cid": 123456789,
            "rating": {"value": 4.8, "votes_count": 320},
            "address": "1 Main St",
            "phone": "+1 555 0100",
            "category": "Dentist",
        },
        {"type": "maps_paid_item", "title": "Ad Dental", "rank_absolute": 2},
        {
            "type": "maps_search",
            "title": "Fielder Park Dental",
            "rank_absolute": 3,
            "rating": None,
        },
    ]


def _client(handler, **kwargs):
    kwargs.setdefault("max_retries", 3)
    return DataForSEOClient(
        login="user@example.com",
        password="secret",
        retry_base_delay=0,
        rate_limiter=RateLimiter(requests_per_minute=1000, min_interval=0),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


# ===========================================================================
# 1. Successful requests
# ===========================================================================
class TestMapsSearch:
    """Request body, auth, and response parsing."""

    @pytest.mark.asyncio
    async def test_parses_maps_search_items(self):
        client = _client(lambda request: httpx.Response(200, json=_payload(_items())))
        listings = await client.google_maps_search("dentist", COORDS, depth=20)

        assert [l.title for l in listings] == ["Smile Studio", "Fielder Park Dental"]
        first = listings[0]
        assert first.rank_absolute == 1
        assert first.cid == "123456789"
        assert first.rating == 4.8
        assert first.review_count == 320
        assert first.address == "1 Main St"
        assert first.category == "Dentist"
        assert listings[1].rating is None
        assert listings[1].review_count is None

    @pytest.mark.asyncio
    async def test_request_uses_coordinate_only(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_payload())

        client = _client(handler)
        await client.google_maps_search("emergency dentist", COORDS, depth=30)

        assert seen["url"].endswith("/serp/google/maps/live/advanced")
        expected_auth = "Basic " + base64.b64encode(b"user@example.com:secret").decode()
        assert seen["auth"] == expected_auth
        task = seen["body"][0]
        assert task["keyword"] == "emergency dentist"
        assert task["location_coordinate"] == COORDS
        assert task["search_places"] is False
        assert task["depth"] == 30
        assert "location_code" not in task
        assert "location_name" not in task

    @pytest.mark.asyncio
    async def test_usage_stats_track_cost(self):
        client = _client(lambda request: httpx.Response(200, json=_payload(cost=0.0025)))
        await client.google_maps_search("dentist", COORDS)
        await client.google_maps_search("dentist", COORDS)
        assert client.get_usage_stats() == {"total_requests": 2, "total_cost_usd": 0.005}

    @pytest.mark.asyncio
    async def test_empty_result(self):
        payload = _payload()
        payload["tasks"][0]["result"] = None
        client = _client(lambda request: httpx.Response(200, json=payload))
        assert await client.google_maps_search("dentist", COORDS) == []


# ===========================================================================
# 2. Failures and retries
# ===========================================================================
class TestErrorsAndRetries:
    """Retryable failures back off and retry; others raise immediately."""

    @pytest.mark.asyncio
    async def test_server_error_retried_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(500, text="Internal Server Error")
            return httpx.Response(200, json=_payload(_items()))

        client = _client(handler)
        listings = await client.google_maps_search("dentist", COORDS)
        assert len(listings) == 2
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_auth_failure_not_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(401, text="Unauthorized")

        client = _client(handler)
        with pytest.raises(DataForSEOError) as exc_info:
            await client.google_maps_search("dentist", COORDS)
        assert exc_info.value.category is ErrorCategory.PERMANENT
        assert exc_info.value.status_code == 401
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_quota_task_status_not_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(200, json=_payload(task_status=40200, message="Payment Required."))

        client = _client(handler)
        with pytest.raises(DataForSEOError) as exc_info:
            await client.google_maps_search("dentist", COORDS)
        assert exc_info.value.category is ErrorCategory.QUOTA
        assert not exc_info.value.retryable
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limited_task_retried_until_exhausted(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(200, json=_payload(task_status=40202, message="Rate limit exceeded."))

        client = _client(handler, max_retries=2)
        with pytest.raises(DataForSEOError) as exc_info:
            await client.google_maps_search("dentist", COORDS)
        assert exc_info.value.retryable
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_top_level_status_checked(self):
        client = _client(lambda request: httpx.Response(
            200, json=_payload(status_code=40100, message="You are not authorized."),
        ))
        with pytest.raises(DataForSEOError) as exc_info:
            await client.google_maps_search("dentist", COORDS)
        assert exc_info.value.category is ErrorCategory.PERMANENT

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json=_payload(_items()))

        client = _client(handler)
        listings = await client.google_maps_search("dentist", COORDS)
        assert len(listings) == 2
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        client = _client(lambda request: httpx.Response(200, text="<html>oops</html>"), max_retries=0)
        with pytest.raises(DataForSEOError) as exc_info:
            await client.google_maps_search("dentist", COORDS)
        assert "Malformed" in str(exc_info.value)

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("DATAFORSEO_LOGIN", raising=False)
        monkeypatch.delenv("DATAFORSEO_PASSWORD", raising=False)
        with pytest.raises(ConfigurationError):
            DataForSEOClient()

    def test_credentials_from_environment(self, monkeypatch):
        monkeypatch.setenv("DATAFORSEO_LOGIN", "env-user")
        monkeypatch.setenv("DATAFORSEO_PASSWORD", "env-pass")
        client = DataForSEOClient()
        assert client.get_usage_stats()["total_requests"] == 0


# ===========================================================================
# 3. Error classification
# ===========================================================================
class TestClassifyError:
    """Status code first, then message text, default retryable."""

    @pytest.mark.parametrize("status_code, expected", [
        (40202, ErrorCategory.RETRYABLE),
        (40200, ErrorCategory.QUOTA),
        (40100, ErrorCategory.PERMANENT),
        (40501, ErrorCategory.PERMANENT),
        (50000, ErrorCategory.RETRYABLE),
        (429, ErrorCategory.RETRYABLE),
        (402, ErrorCategory.QUOTA),
        (404, ErrorCategory.PERMANENT),
        (503, ErrorCategory.RETRYABLE),
    ])
    def test_status_codes(self, status_code, expected):
        assert classify_error("anything", status_code) is expected

    @pytest.mark.parametrize("message, expected", [
        ("Rate limit exceeded", ErrorCategory.RETRYABLE),
        ("Too Many Requests", ErrorCategory.RETRYABLE),
        ("Insufficient balance on account", ErrorCategory.QUOTA),
        ("Unauthorized", ErrorCategory.PERMANENT),
        ("Invalid field: depth", ErrorCategory.PERMANENT),
        ("Connection reset by peer", ErrorCategory.RETRYABLE),
        ("", ErrorCategory.RETRYABLE),
    ])
    def test_message_patterns(self, message, expected):
        assert classify_error(message) is expected

    def test_error_carries_category(self):
        err = DataForSEOError("Payment required", status_code=40200)
        assert err.category is ErrorCategory.QUOTA
        assert err.retryable is False


# ===========================================================================
# 4. Parsing
# ===========================================================================
class TestParseMapsItems:
    """Defensive extraction from the response envelope."""

    def test_no_tasks(self):
        assert parse_maps_items({}) == []
        assert parse_maps_items({"tasks": []}) == []

    def test_skips_items_without_title_or_rank(self):
        payload = _payload([
            {"type": "maps_search", "title": "", "rank_absolute": 1},
            {"type": "maps_search", "title": "No Rank Dental"},
            {"type": "maps_search", "title": "Good Dental", "rank_absolute": "4"},
        ])
        listings = parse_maps_items(payload)
        assert [(l.title, l.rank_absolute) for l in listings] == [("Good Dental", 4)]
