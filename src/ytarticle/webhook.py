"""Signed webhook verification and idempotent article materialization."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging

from pydantic import ValidationError

from ytarticle.errors import MaterializationError, PayloadError, SignatureError, WebhookError
from ytarticle.locks import KeyedLock
from ytarticle.models import ArticleArtifact, WebhookEvent, WebhookOutcome, WebhookPayload, WebhookResult
from ytarticle.store import ArticleStore

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def _as_bytes(raw_body: bytes | str) -> bytes:
    return raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body


def sign_payload(raw_body: bytes | str, secret: str) -> str:
    """Return the ``sha256=<hex>`` signature header value for a body."""

    digest = hmac.new(secret.encode("utf-8"), _as_bytes(raw_body), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(raw_body: bytes | str, signature: str | None, secret: str | None) -> bool:
    """Check an HMAC-SHA256 signature over the raw, unparsed body in constant time."""

    if not signature or not secret:
        logger.warning("Missing signature or secret for webhook verification")
        return False

    provided = signature.strip().removeprefix(SIGNATURE_PREFIX)
    expected = sign_payload(raw_body, secret).removeprefix(SIGNATURE_PREFIX)
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def parse_webhook(raw_body: bytes | str, signature: str | None, secret: str | None) -> WebhookPayload:
    """Verify, then parse. Nothing in an unauthenticated body is ever decoded."""

    if not verify_signature(raw_body, signature, secret):
        raise SignatureError("Invalid signature")

    try:
        data = json.loads(raw_body)
    except ValueError as exc:
        raise PayloadError("Invalid JSON") from exc

    if not isinstance(data, dict):
        raise PayloadError("Invalid JSON")

    try:
        return WebhookPayload.model_validate(data)
    except ValidationError as exc:
        raise PayloadError(f"Invalid payload: {exc.error_count()} validation error(s)") from exc


def _rejected(message: str, status_code: int, request_id: str | None = None) -> WebhookResult:
    return WebhookResult(
        outcome=WebhookOutcome.REJECTED,
        request_id=request_id,
        message=message,
        error=message,
        status_code=status_code,
    )


def _failed(message: str, request_id: str) -> WebhookResult:
    return WebhookResult(
        outcome=WebhookOutcome.FAILED,
        request_id=request_id,
        message=message,
        error=message,
        status_code=500,
    )


class WebhookReceiver:
    """Handles one webhook delivery at a time per request id, creating at most one article."""

    def __init__(self, store: ArticleStore) -> None:
        self._store = store
        self._locks = KeyedLock()

    @property
    def store(self) -> ArticleStore:
        return self._store

    async def handle_webhook(
        self,
        raw_body: bytes | str,
        signature_header: str | None,
        secret: str | None,
    ) -> WebhookResult:
        try:
            payload = parse_webhook(raw_body, signature_header, secret)
        except WebhookError as exc:
            logger.warning(f"Rejected webhook: {exc}")
            return _rejected(str(exc), exc.status_code)

        logger.info(f"Processing webhook event: {payload.event}")

        if payload.event == WebhookEvent.COMPLETED.value:
            return await self._process_completed(payload)
        if payload.event == WebhookEvent.FAILED.value:
            return self._process_failed(payload)

        logger.warning(f"Unknown webhook event: {payload.event}")
        return _rejected("Unknown event type", 400, payload.request_id or None)

    async def _process_completed(self, payload: WebhookPayload) -> WebhookResult:
        request_id = payload.request_id
        if not request_id:
            return _rejected("Missing request_id", 400)

        async with self._locks.hold(request_id):
            try:
                if await self._store.exists(request_id):
                    logger.info(f"Article already exists for request {request_id}")
                    return WebhookResult(
                        outcome=WebhookOutcome.ALREADY_EXISTS,
                        request_id=request_id,
                        message="Article already exists",
                    )

                logger.info(
                    f"Processing article webhook: {payload.data.content_type} format, "
                    f"{len(payload.data.content)} chars"
                )
                artifact = ArticleArtifact.from_payload(payload)
                artifact_id = await self._store.create(artifact)
            except (ValidationError, ValueError, TypeError) as exc:
                logger.error(f"Article validation failed for request {request_id}: {exc}")
                return _failed(f"Validation failed: {exc}", request_id)
            except (MaterializationError, OSError) as exc:
                logger.error(f"Failed to save article for request {request_id}: {exc}")
                return _failed(f"Failed to save article: {exc}", request_id)

        logger.info(f"Created article {artifact_id} for request {request_id}")
        return WebhookResult(
            outcome=WebhookOutcome.CREATED,
            request_id=request_id,
            message="Article created successfully",
            artifact_id=artifact_id,
        )

    def _process_failed(self, payload: WebhookPayload) -> WebhookResult:
        error = payload.data.error or "Unknown error"
        logger.error(f"Article generation failed for request {payload.request_id}: {error}")
        return WebhookResult(
            outcome=WebhookOutcome.FAILURE_LOGGED,
            request_id=payload.request_id or None,
            message="Failure logged",
        )
