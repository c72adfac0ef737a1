"""FastAPI application: webhook intake, status polling, result lookup and progress sockets."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ytarticle.config import Settings, load_settings
from ytarticle.errors import ApiError, MaterializationError
from ytarticle.logging_setup import configure_logging
from ytarticle.models import ChannelNotice, FailureKind, NoticeKind, SubmissionFailure
from ytarticle.orchestrator import GENERIC_FAILURE_MESSAGE, Orchestrator, user_message

logger = logging.getLogger(__name__)

_FAILURE_STATUS = {
    FailureKind.VALIDATION: 400,
    FailureKind.AUTHENTICATION: 401,
    FailureKind.INSUFFICIENT_FUNDS: 402,
    FailureKind.RATE_LIMIT: 429,
    FailureKind.API: 502,
}


class ArticleSubmission(BaseModel):
    url: str
    config: dict[str, Any] | None = None


def _failure_response(failure: SubmissionFailure) -> JSONResponse:
    headers: dict[str, str] = {}
    if failure.kind == FailureKind.RATE_LIMIT and failure.retry_after is not None:
        headers["Retry-After"] = str(failure.retry_after)
    return JSONResponse(
        {"error": user_message(failure), "kind": failure.kind.value, "message": failure.message},
        status_code=_FAILURE_STATUS[failure.kind],
        headers=headers,
    )


def _ends_channel(notice: ChannelNotice) -> bool:
    return notice.fatal or (notice.kind == NoticeKind.STATE and notice.state == "closed")


async def _drain_client(websocket: WebSocket, request_id: str) -> None:
    # Client messages carry nothing; reading only detects disconnects.
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"Progress client for request {request_id} disconnected")


async def _sweep_forever(orchestrator: Orchestrator, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        evicted = await orchestrator.sweep()
        if evicted:
            logger.debug(f"Swept {len(evicted)} request(s): {', '.join(evicted)}")


def create_app(settings: Settings | None = None, *, orchestrator: Orchestrator | None = None) -> FastAPI:
    """Build the app. Collaborators are created eagerly so tests can skip the lifespan."""

    settings = settings or load_settings()
    orchestrator = orchestrator or Orchestrator.from_settings(settings)
    configured_secret = settings.api.webhook_secret.get_secret_value() if settings.api.webhook_secret else None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sweeper = asyncio.create_task(_sweep_forever(orchestrator, settings.registry.sweep_interval_seconds))
        logger.info("ytarticle server started")
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            await orchestrator.aclose()
            logger.info("ytarticle server stopped")

    app = FastAPI(title="ytarticle", lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    @app.post("/webhook")
    async def receive_webhook(request: Request) -> JSONResponse:
        raw_body = await request.body()
        signature = request.headers.get("X-Webhook-Signature")
        secret = request.headers.get("X-Webhook-Secret") or configured_secret

        result = await orchestrator.handle_webhook(raw_body, signature, secret)
        return JSONResponse(result.to_response(), status_code=result.status_code)

    @app.get("/status/{request_id}")
    async def article_status(request_id: str) -> JSONResponse:
        try:
            request = await orchestrator.poll_status(request_id)
        except ApiError as exc:
            logger.error(f"Status check failed for request {request_id}: {exc.message}")
            return JSONResponse({"error": exc.message}, status_code=500)
        return JSONResponse(request.model_dump(mode="json"))

    @app.get("/result/{request_id}")
    async def article_result(request_id: str) -> JSONResponse:
        try:
            location = await orchestrator.receiver.store.find(request_id)
        except MaterializationError as exc:
            logger.error(f"Result lookup failed for request {request_id}: {exc}")
            return JSONResponse({"error": str(exc)}, status_code=500)
        if not location.found:
            return JSONResponse({"found": False, "message": "Article not found yet"}, status_code=404)
        return JSONResponse(location.model_dump(mode="json"))

    @app.post("/articles")
    async def submit_article(submission: ArticleSubmission) -> JSONResponse:
        result = await orchestrator.submit(submission.url, submission.config)
        if result.failure is not None:
            return _failure_response(result.failure)
        if result.request is None:
            return JSONResponse({"error": GENERIC_FAILURE_MESSAGE}, status_code=500)
        return JSONResponse(
            {"request_id": result.request.request_id, "status": result.request.status.value},
            status_code=202,
        )

    @app.websocket("/articles/{request_id}/events")
    async def article_events(websocket: WebSocket, request_id: str) -> None:
        await websocket.accept()
        finished = asyncio.Event()

        async def forward(notice: ChannelNotice) -> None:
            await websocket.send_json(notice.model_dump(mode="json", exclude_none=True))
            if _ends_channel(notice):
                finished.set()

        await orchestrator.watch(request_id, forward)
        client_task = asyncio.create_task(_drain_client(websocket, request_id))
        finished_task = asyncio.create_task(finished.wait())
        try:
            await asyncio.wait({client_task, finished_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            client_task.cancel()
            finished_task.cancel()
            await orchestrator.cancel(request_id)

        if finished.is_set() and not client_task.done():
            await websocket.close()

    return app


def main_app() -> FastAPI:
    """Factory used by ``uvicorn --factory``."""

    settings = load_settings()
    configure_logging(settings.log_level)
    return create_app(settings)
