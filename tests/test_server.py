import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from fakes import FakeConnection, FakeConnector, RecordingSleep, frame
from ytarticle.api_client import ApiClient
from ytarticle.channel import StoreResultLookup
from ytarticle.config import ApiSettings, Settings
from ytarticle.models import ArticleArtifact
from ytarticle.orchestrator import Orchestrator
from ytarticle.registry import RequestRegistry
from ytarticle.server import create_app
from ytarticle.store import InMemoryArticleStore
from ytarticle.webhook import WebhookReceiver, sign_payload

VIDEO_URL = "https://youtu.be/dQw4w9WgXcQ"
SECRET = "s3cret"


def api_handler(request: httpx.Request) -> httpx.Response:
    if request.method == "POST":
        body = json.loads(request.content)
        if "broke" in body["youtube_url"]:
            return httpx.Response(402, json={"detail": "Insufficient funds", "current_balance": 0.05})
        return httpx.Response(202, json={"request_id": "req-1", "status": "pending"})
    if request.url.path.endswith("/article/missing"):
        return httpx.Response(404, json={"detail": "Not found"})
    return httpx.Response(200, json={"request_id": "req-1", "status": "processing"})


def make_app(connector: FakeConnector | None = None):
    settings = Settings(api=ApiSettings(api_token="token-123", webhook_secret=SECRET))
    store = InMemoryArticleStore()
    orchestrator = Orchestrator(
        ApiClient(settings.api, http_client=httpx.AsyncClient(transport=httpx.MockTransport(api_handler))),
        RequestRegistry(settings.registry),
        WebhookReceiver(store),
        lookup=StoreResultLookup(store),
        connector=connector or FakeConnector(),
        sleep=RecordingSleep(),
    )
    return create_app(settings, orchestrator=orchestrator), orchestrator, store


def http_client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def webhook_body(request_id: str = "req-1") -> bytes:
    return json.dumps(
        {
            "event": "article.completed",
            "request_id": request_id,
            "data": {"content": "# Article", "video_info": {"title": "A Talk"}},
        }
    ).encode("utf-8")


@pytest.mark.anyio
async def test_webhook_endpoint_creates_once_then_reports_existing() -> None:
    app, _, store = make_app()
    body = webhook_body()
    headers = {"X-Webhook-Signature": sign_payload(body, SECRET), "Content-Type": "application/json"}

    async with http_client(app) as client:
        first = await client.post("/webhook", content=body, headers=headers)
        second = await client.post("/webhook", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json() == {"success": True, "message": "Article created successfully", "node_id": "1"}
    assert second.status_code == 200
    assert second.json()["message"] == "Article already exists"
    assert len(store.articles) == 1


@pytest.mark.anyio
async def test_webhook_endpoint_rejects_bad_signature_and_honours_one_time_secret() -> None:
    app, _, _ = make_app()
    body = webhook_body()

    async with http_client(app) as client:
        tampered = await client.post(
            "/webhook", content=body + b" ", headers={"X-Webhook-Signature": sign_payload(body, SECRET)}
        )
        one_time = await client.post(
            "/webhook",
            content=body,
            headers={"X-Webhook-Signature": sign_payload(body, "one-time"), "X-Webhook-Secret": "one-time"},
        )

    assert tampered.status_code == 401
    assert tampered.json() == {"success": False, "error": "Invalid signature"}
    assert one_time.status_code == 200


@pytest.mark.anyio
async def test_result_endpoint_reports_found_and_missing() -> None:
    app, _, store = make_app()
    await store.create(ArticleArtifact(request_id="req-1", title="A Talk", content="Body"))

    async with http_client(app) as client:
        found = await client.get("/result/req-1")
        missing = await client.get("/result/req-2")

    assert found.status_code == 200
    assert found.json() == {"found": True, "url": "/articles/1", "title": "A Talk"}
    assert missing.status_code == 404
    assert missing.json()["found"] is False


@pytest.mark.anyio
async def test_submit_endpoint_maps_failures_to_status_codes() -> None:
    app, orchestrator, _ = make_app()

    async with http_client(app) as client:
        accepted = await client.post("/articles", json={"url": VIDEO_URL, "config": {"length": "brief"}})
        invalid = await client.post("/articles", json={"url": "https://example.com/x"})
        broke = await client.post("/articles", json={"url": "https://youtu.be/broke"})

    assert accepted.status_code == 202
    assert accepted.json() == {"request_id": "req-1", "status": "pending"}
    assert "req-1" in orchestrator.registry

    assert invalid.status_code == 400
    assert invalid.json()["kind"] == "validation"

    assert broke.status_code == 402
    assert broke.json()["kind"] == "insufficient_funds"
    assert "minimum balance of $0.30" in broke.json()["error"]


@pytest.mark.anyio
async def test_status_endpoint_polls_and_surfaces_errors() -> None:
    app, _, _ = make_app()

    async with http_client(app) as client:
        ok = await client.get("/status/req-1")
        missing = await client.get("/status/missing")

    assert ok.status_code == 200
    assert ok.json()["status"] == "processing"
    assert missing.status_code == 500
    assert missing.json() == {"error": "Not found"}


def test_progress_socket_relays_notices_until_the_channel_closes() -> None:
    connector = FakeConnector(FakeConnection([frame("transcribing", 30), frame("finished", 0.42)]))
    app, orchestrator, store = make_app(connector)
    asyncio.run(store.create(ArticleArtifact(request_id="req-1", title="A Talk", content="Body")))

    client = TestClient(app)
    received = []
    with client.websocket_connect("/articles/req-1/events") as websocket:
        while True:
            notice = websocket.receive_json()
            received.append(notice)
            if notice["kind"] == "state" and notice.get("state") == "closed":
                break

    progress = [notice["event"]["progress"] for notice in received if notice["kind"] == "progress"]
    assert progress == [pytest.approx(0.3), 1.0]
    assert [notice for notice in received if notice["kind"] == "result"][0]["location"]["url"] == "/articles/1"
    assert connector.calls[0][0].endswith("/article/req-1?token=token-123")
