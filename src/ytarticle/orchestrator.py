"""Request lifecycle: submission, realtime relay, webhook finalization."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from ytarticle.api_client import ApiClient
from ytarticle.channel import (
    Connector,
    HttpResultLookup,
    RealtimeChannel,
    ResultLookup,
    StoreResultLookup,
    Subscriber,
    websocket_connector,
)
from ytarticle.config import ChannelSettings, GenerationOptions, Settings
from ytarticle.errors import (
    ApiError,
    AuthenticationError,
    InsufficientFundsError,
    RateLimitError,
    RequestValidationError,
)
from ytarticle.models import (
    ChannelNotice,
    FailureKind,
    GenerationRequest,
    GenerationStatus,
    NoticeKind,
    SubmissionFailure,
    SubmissionResult,
    WebhookOutcome,
    WebhookResult,
)
from ytarticle.registry import RegistryEntry, RequestRegistry
from ytarticle.store import ArticleStore, InMemoryArticleStore, MarkdownArticleStore
from ytarticle.webhook import WebhookReceiver

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 60
GENERIC_FAILURE_MESSAGE = "Unable to connect to the article generation service. Please try again later."

_WEBHOOK_STATUS = {
    WebhookOutcome.CREATED: GenerationStatus.COMPLETED,
    WebhookOutcome.ALREADY_EXISTS: GenerationStatus.COMPLETED,
    WebhookOutcome.FAILURE_LOGGED: GenerationStatus.FAILED,
}


def user_message(failure: SubmissionFailure) -> str:
    """Render a submission failure for end users without leaking internal error text."""

    if failure.kind == FailureKind.INSUFFICIENT_FUNDS:
        return (
            "Insufficient funds to generate article. You need either credits "
            f"(current: {failure.current_credits or 0}) or minimum balance of "
            f"${failure.minimum_balance or 0:.2f} (current: ${failure.current_balance or 0:.2f})."
        )
    if failure.kind == FailureKind.RATE_LIMIT:
        seconds = failure.retry_after if failure.retry_after is not None else DEFAULT_RETRY_AFTER
        return f"Rate limit exceeded. Please wait {seconds} seconds before trying again."
    if failure.kind == FailureKind.AUTHENTICATION:
        return "Authentication with the article generation service failed. Please contact your administrator."
    if failure.kind == FailureKind.VALIDATION:
        return failure.message
    return GENERIC_FAILURE_MESSAGE


def _failure_from_exception(exc: Exception) -> SubmissionFailure:
    if isinstance(exc, InsufficientFundsError):
        return SubmissionFailure(
            kind=FailureKind.INSUFFICIENT_FUNDS,
            message=exc.message,
            status_code=exc.status_code,
            current_credits=exc.current_credits,
            current_balance=exc.current_balance,
            minimum_balance=exc.minimum_balance,
        )
    if isinstance(exc, RateLimitError):
        return SubmissionFailure(
            kind=FailureKind.RATE_LIMIT,
            message=exc.message,
            status_code=exc.status_code,
            retry_after=exc.retry_after,
        )
    if isinstance(exc, AuthenticationError):
        return SubmissionFailure(kind=FailureKind.AUTHENTICATION, message=exc.message, status_code=exc.status_code)
    if isinstance(exc, ApiError):
        return SubmissionFailure(
            kind=FailureKind.API,
            message=GENERIC_FAILURE_MESSAGE,
            detail=exc.message,
            status_code=exc.status_code,
        )
    return SubmissionFailure(kind=FailureKind.VALIDATION, message=str(exc), status_code=400)


ChannelFactory = Callable[[str, Subscriber], RealtimeChannel]


class Orchestrator:
    """Owns the lifecycle of every submitted request.

    Terminal state can arrive from the realtime channel or from the webhook,
    in either order. Both paths go through :meth:`finalize`, and the registry
    lets only the first one through.
    """

    def __init__(
        self,
        api_client: ApiClient,
        registry: RequestRegistry,
        receiver: WebhookReceiver,
        *,
        channel_settings: ChannelSettings | None = None,
        lookup: ResultLookup | None = None,
        connector: Connector = websocket_connector,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        realtime_enabled: bool = True,
    ) -> None:
        self._api = api_client
        self._registry = registry
        self._receiver = receiver
        self._channel_settings = channel_settings or ChannelSettings()
        self._lookup = lookup
        self._connector = connector
        self._sleep = sleep
        self._realtime_enabled = realtime_enabled

    @classmethod
    def from_settings(cls, settings: Settings) -> "Orchestrator":
        """Wire an orchestrator, its store and its result lookup from settings."""

        if settings.store.article_dir is not None:
            store: ArticleStore = MarkdownArticleStore(settings.store.article_dir, settings.store.public_base_url)
        else:
            store = InMemoryArticleStore(settings.store.public_base_url)

        lookup: ResultLookup
        if settings.channel.result_lookup_url:
            lookup = HttpResultLookup(settings.channel.result_lookup_url)
        else:
            lookup = StoreResultLookup(store)

        return cls(
            ApiClient(settings.api),
            RequestRegistry(settings.registry),
            WebhookReceiver(store),
            channel_settings=settings.channel,
            lookup=lookup,
        )

    @property
    def registry(self) -> RequestRegistry:
        return self._registry

    @property
    def receiver(self) -> WebhookReceiver:
        return self._receiver

    @property
    def api_client(self) -> ApiClient:
        return self._api

    async def submit(
        self,
        url: str,
        options: GenerationOptions | Mapping[str, Any] | None = None,
        *,
        subscriber: Subscriber | None = None,
    ) -> SubmissionResult:
        """Submit a video; failures come back as a typed ``SubmissionFailure``, never raised.

        A plain mapping of options is sent to the API as given. Only
        ``GenerationOptions`` carries local validation.
        """

        try:
            request = await self._api.generate_article(url, options)
        except RequestValidationError as exc:
            logger.info(f"Rejected submission for {url!r}: {exc}")
            return SubmissionResult(failure=_failure_from_exception(exc))
        except InsufficientFundsError as exc:
            logger.warning(
                f"Insufficient funds: credits={exc.current_credits} balance={exc.current_balance} "
                f"minimum_balance={exc.minimum_balance}"
            )
            return SubmissionResult(failure=_failure_from_exception(exc))
        except RateLimitError as exc:
            logger.warning(f"Rate limited by API; retry after {exc.retry_after}")
            return SubmissionResult(failure=_failure_from_exception(exc))
        except ApiError as exc:
            logger.error(f"API error: {exc.message} (status={exc.status_code}, context={exc.context})")
            return SubmissionResult(failure=_failure_from_exception(exc))

        await self._registry.register(request)
        logger.info(f"Article generation started for {request.source_url} with request id {request.request_id}")

        if subscriber is not None and self._realtime_enabled:
            await self.watch(request.request_id, subscriber)

        return SubmissionResult(request=request)

    def _make_channel(self, request_id: str, subscriber: Subscriber) -> RealtimeChannel:
        return RealtimeChannel(
            request_id,
            subscriber,
            api_settings=self._api.settings,
            settings=self._channel_settings,
            lookup=self._lookup,
            connector=self._connector,
            sleep=self._sleep,
        )

    def _relay(self, request_id: str, subscriber: Subscriber) -> Subscriber:
        async def relay(notice: ChannelNotice) -> None:
            event = notice.event
            if notice.kind == NoticeKind.PROGRESS and event is not None:
                if event.is_complete:
                    await self.finalize(request_id, GenerationStatus.COMPLETED, "realtime")
                elif event.is_error:
                    await self.finalize(request_id, GenerationStatus.FAILED, "realtime")
                else:
                    await self._registry.update_status(request_id, GenerationStatus.PROCESSING)
            await subscriber(notice)

        return relay

    async def watch(self, request_id: str, subscriber: Subscriber) -> RealtimeChannel:
        """Open a realtime channel for a request and start relaying it to ``subscriber``."""

        entry = self._registry.get(request_id)
        if entry is None:
            entry = await self._registry.register(
                GenerationRequest(request_id=request_id, status=GenerationStatus.PROCESSING)
            )
        if entry.channel is not None and entry.channel.is_open:
            await entry.channel.close()

        channel = self._make_channel(request_id, self._relay(request_id, subscriber))
        await self._registry.attach_channel(request_id, channel)
        channel.start()
        return channel

    async def finalize(self, request_id: str, status: GenerationStatus, source: str) -> bool:
        first = await self._registry.finalize(request_id, status, source)
        if first:
            self._api.cache.invalidate(request_id)
        return first

    async def handle_webhook(
        self,
        raw_body: bytes | str,
        signature: str | None,
        secret: str | None,
    ) -> WebhookResult:
        """Run a webhook delivery through the receiver and record its terminal state."""

        result = await self._receiver.handle_webhook(raw_body, signature, secret)
        status = _WEBHOOK_STATUS.get(result.outcome)
        if status is None or not result.request_id:
            return result

        await self.finalize(result.request_id, status, "webhook")

        entry = self._registry.get(result.request_id)
        if entry is not None and entry.channel is not None and entry.channel.is_open:
            message = "Article created" if status == GenerationStatus.COMPLETED else "Article generation failed"
            await entry.channel.notify(
                ChannelNotice(
                    kind=NoticeKind.COMPLETED,
                    request_id=result.request_id,
                    message=message,
                    state=status.value,
                    source="webhook",
                )
            )
        return result

    async def poll_status(self, request_id: str) -> GenerationRequest:
        """Fetch status through the API client cache and record it."""

        request = await self._api.get_article_status(request_id)
        if request.is_terminal:
            await self.finalize(request_id, request.status, "poll")
        else:
            await self._registry.update_status(request_id, request.status)
        return request

    async def cancel(self, request_id: str) -> bool:
        """Tear down the request's channel and forget it."""

        entry = await self._registry.remove(request_id)
        if entry is None:
            return False
        await self._close_channel(entry)
        logger.info(f"Cancelled tracking for request {request_id}")
        return True

    async def sweep(self) -> list[str]:
        evicted = await self._registry.evict_expired()
        for entry in evicted:
            await self._close_channel(entry)
        return [entry.request_id for entry in evicted]

    async def aclose(self) -> None:
        for entry in self._registry.entries():
            await self._close_channel(entry)
        if isinstance(self._lookup, HttpResultLookup):
            await self._lookup.aclose()
        await self._api.aclose()

    async def _close_channel(self, entry: RegistryEntry) -> None:
        if entry.channel is not None:
            await entry.channel.close()
