"""Meta client: pagination, retries and error-envelope translation."""

import asyncio
import json
from datetime import date

import httpx
import pytest

from spendboard.connectors.meta.client import MetaClient
from spendboard.connectors.meta.endpoints import MetaEndpoints
from spendboard.core.errors import AuthExpired, UpstreamRejected, UpstreamUnavailable

BASE = "https://graph.test/v21.0"


def make_client(handler, **kwargs) -> MetaClient:
    kwargs.setdefault("max_retries", 3)
    return MetaClient(
        "tok",
        base_url=BASE,
        retry_base_delay=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def run(coro_fn, client):
    async def go():
        async with client:
            return await coro_fn(client)

    return asyncio.run(go())


def test_fetch_all_follows_paging_next():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        if request.url.params.get("after") == "p2":
            return httpx.Response(200, json={"data": [{"id": "3"}]})
        return httpx.Response(
            200,
            json={
                "data": [{"id": "1"}, {"id": "2"}],
                "paging": {"next": f"{BASE}/act_1/insights?after=p2&access_token=tok"},
            },
        )

    page = run(lambda c: c.fetch_all("/act_1/insights", {"level": "ad"}), make_client(handler))
    assert [r["id"] for r in page.data] == ["1", "2", "3"]
    assert page.next_cursor is None
    assert len(seen) == 2
    assert seen[0].params["access_token"] == "tok"
    assert seen[0].params["level"] == "ad"
    assert seen[1].params["after"] == "p2"


def test_fetch_all_refuses_truncated_results():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(
            200, json={"data": [{"id": "x"}], "paging": {"next": f"{BASE}/loop?after=again"}}
        )

    with pytest.raises(UpstreamRejected) as exc:
        run(lambda c: c.fetch_all("/loop"), make_client(handler, max_pages=3))
    assert len(calls) == 3
    assert "3 pages" in exc.value.message
    assert exc.value.hint


def test_fetch_all_accepts_exactly_max_pages():
    def handler(request):
        if request.url.params.get("after") == "p3":
            return httpx.Response(200, json={"data": [{"id": "c"}]})
        after = request.url.params.get("after")
        nxt = "p3" if after == "p2" else "p2"
        return httpx.Response(
            200, json={"data": [{"id": nxt}], "paging": {"next": f"{BASE}/p?after={nxt}"}}
        )

    page = run(lambda c: c.fetch_all("/p"), make_client(handler, max_pages=3))
    assert [r["id"] for r in page.data] == ["p2", "p3", "c"]


def test_expired_token_code_maps_to_auth_expired():
    def handler(request):
        return httpx.Response(
            400,
            json={"error": {"message": "Error validating access token", "code": 190}},
        )

    with pytest.raises(AuthExpired) as exc:
        run(lambda c: c.fetch_page("/me/adaccounts"), make_client(handler))
    assert exc.value.error_code == 190
    assert "regenerate" in exc.value.hint


def test_session_expired_code_maps_to_auth_expired():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "Session expired", "code": 102}})

    with pytest.raises(AuthExpired):
        run(lambda c: c.fetch_page("/me/adaccounts"), make_client(handler))


def test_http_401_without_envelope_maps_to_auth_expired():
    def handler(request):
        return httpx.Response(401, text="unauthorized")

    with pytest.raises(AuthExpired):
        run(lambda c: c.fetch_page("/me/adaccounts"), make_client(handler))


def test_other_error_codes_are_rejections():
    def handler(request):
        return httpx.Response(
            400, json={"error": {"message": "Invalid parameter", "code": 100}}
        )

    with pytest.raises(UpstreamRejected) as exc:
        run(lambda c: c.fetch_page("/act_1/insights"), make_client(handler))
    assert exc.value.message == "Invalid parameter"
    assert exc.value.error_code == 100
    assert not isinstance(exc.value, AuthExpired)


def test_error_envelope_on_200_is_still_an_error():
    def handler(request):
        return httpx.Response(200, json={"error": {"message": "Unsupported get request", "code": 100}})

    with pytest.raises(UpstreamRejected):
        run(lambda c: c.fetch_page("/act_1/campaigns"), make_client(handler))


def test_server_error_is_retried():
    attempts = []

    def handler(request):
        attempts.append(1)
        if len(attempts) == 1:
            return httpx.Response(500, json={})
        return httpx.Response(200, json={"data": [{"id": "1"}]})

    page = run(lambda c: c.fetch_page("/act_1/insights"), make_client(handler))
    assert len(page.data) == 1
    assert len(attempts) == 2


def test_persistent_rate_limit_is_unavailable():
    attempts = []

    def handler(request):
        attempts.append(1)
        return httpx.Response(429, json={})

    with pytest.raises(UpstreamUnavailable):
        run(lambda c: c.fetch_page("/act_1/insights"), make_client(handler))
    assert len(attempts) == 3


def test_timeout_maps_to_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(UpstreamUnavailable) as exc:
        run(lambda c: c.fetch_page("/act_1/insights"), make_client(handler, max_retries=2))
    assert "timeout" in exc.value.hint.lower()


def test_connection_error_maps_to_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamUnavailable):
        run(lambda c: c.fetch_page("/me/adaccounts"), make_client(handler))


# ── Endpoints ──


def test_insights_request_shape():
    captured = {}

    def handler(request):
        captured.update(dict(request.url.params))
        captured["path"] = request.url.path
        return httpx.Response(200, json={"data": [{"campaign_id": "c1"}]})

    async def go(client):
        return await MetaEndpoints(client).fetch_campaign_insights(
            "act_1", date(2025, 6, 1), date(2025, 6, 12)
        )

    rows = run(go, make_client(handler))
    assert rows == [{"campaign_id": "c1"}]
    assert captured["path"] == "/v21.0/act_1/insights"
    assert captured["level"] == "campaign"
    assert captured["time_increment"] == "1"
    assert json.loads(captured["time_range"]) == {"since": "2025-06-01", "until": "2025-06-12"}


def test_active_ad_campaign_ids_are_a_set():
    def handler(request):
        assert json.loads(request.url.params["effective_status"]) == ["ACTIVE"]
        return httpx.Response(
            200,
            json={
                "data": [
                    {"id": "a1", "campaign_id": "c1"},
                    {"id": "a2", "campaign_id": "c1"},
                    {"id": "a3", "campaign_id": "c2"},
                    {"id": "a4"},
                ]
            },
        )

    ids = run(lambda c: MetaEndpoints(c).fetch_active_ad_campaign_ids("act_1"), make_client(handler))
    assert ids == {"c1", "c2"}
