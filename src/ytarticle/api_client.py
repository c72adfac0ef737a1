"""Async HTTP client for the article generation API."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import httpx
from dateutil.parser import parse as parse_date

from ytarticle.cache import StatusCache
from ytarticle.config import ApiSettings, GenerationOptions
from ytarticle.errors import ApiError, AuthenticationError, InsufficientFundsError, RateLimitError
from ytarticle.models import GenerationRequest
from ytarticle.urls import validate_video_url

logger = logging.getLogger(__name__)

ARTICLE_ENDPOINT = "/article/"
QUEUE_STATUS_ENDPOINT = "/article/queue-status"
QUEUE_STATUS_TIMEOUT = 10.0
DEFAULT_MINIMUM_BALANCE = 0.30
DEFAULT_WEBHOOK_CONFIG: dict[str, Any] = {"content_type": "markdown", "include_metadata": True}
_SUCCESS_CODES = {200, 201, 202}


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> int | None:
    """Convert a Retry-After header (delta seconds or HTTP-date) into seconds from now."""

    if value is None or not value.strip():
        return None

    raw = value.strip()
    try:
        return max(0, int(float(raw)))
    except (ValueError, OverflowError):
        pass

    try:
        retry_at = parse_date(raw)
    except (ValueError, OverflowError):
        return None

    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)

    reference = now or datetime.now(timezone.utc)
    return max(0, math.ceil((retry_at - reference).total_seconds()))


def _number(source: Mapping[str, Any], key: str, default: float) -> float:
    value = source.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_insufficient_funds(body: Any) -> InsufficientFundsError:
    """Build an InsufficientFundsError from a 402 body, flat or wrapped under ``detail``."""

    source = body if isinstance(body, dict) else {}
    detail = source.get("detail")

    if isinstance(detail, dict):
        figures = detail
        message = detail.get("detail") or detail.get("message") or "Insufficient funds"
    else:
        figures = source
        message = detail if isinstance(detail, str) and detail else "Insufficient funds"

    return InsufficientFundsError(
        str(message),
        current_credits=int(_number(figures, "current_credits", 0)),
        current_balance=_number(figures, "current_balance", 0.0),
        minimum_balance=_number(figures, "minimum_balance", DEFAULT_MINIMUM_BALANCE),
        body=body,
    )


def _detail_message(body: Any, default: str) -> str:
    if isinstance(body, dict) and isinstance(body.get("detail"), str) and body["detail"]:
        return body["detail"]
    return default


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _raise_for_status(response: httpx.Response, body: Any) -> None:
    status = response.status_code
    if status in _SUCCESS_CODES:
        return

    if status == 401:
        raise AuthenticationError(_detail_message(body, "Invalid API token"), body=body)

    if status == 402:
        raise parse_insufficient_funds(body)

    if status == 429:
        raise RateLimitError(
            _detail_message(body, "Rate limit exceeded"),
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            body=body,
        )

    raise ApiError(
        _detail_message(body, "Unexpected API response"),
        status_code=status,
        body=body,
        context={"response": body},
    )


class ApiClient:
    """Submit generation jobs, poll their status and download results."""

    def __init__(
        self,
        settings: ApiSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
        cache: StatusCache | None = None,
    ) -> None:
        self._settings = settings
        self._client = http_client or httpx.AsyncClient(timeout=settings.timeout_seconds)
        self._owns_client = http_client is None
        self._cache = cache or StatusCache()

    @property
    def settings(self) -> ApiSettings:
        return self._settings

    @property
    def cache(self) -> StatusCache:
        return self._cache

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        token = self._settings.api_token.get_secret_value() if self._settings.api_token else ""
        if not token:
            raise AuthenticationError("API token not configured")

        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": self._settings.user_agent,
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
        action: str,
    ) -> httpx.Response:
        headers = self._headers()
        url = f"{self._settings.api_url}{path}"
        try:
            return await self._client.request(
                method,
                url,
                headers=headers,
                json=json,
                timeout=timeout if timeout is not None else self._settings.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.error(f"API request failed ({action}): {exc!r}")
            raise ApiError(f"Failed to {action}: {exc}", context={"url": url}) from exc

    async def generate_article(
        self,
        url: str,
        config: GenerationOptions | Mapping[str, Any] | None = None,
        *,
        webhook_url: str | None = None,
        webhook_config: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> GenerationRequest:
        """Submit a video for article generation and return the accepted request."""

        youtube_url = validate_video_url(url)
        config_data = config.to_config() if isinstance(config, GenerationOptions) else dict(config or {})

        payload: dict[str, Any] = {"youtube_url": youtube_url}
        if config_data:
            payload["config"] = config_data

        target = webhook_url or self._settings.webhook_url
        if target:
            payload["webhook_url"] = target
            payload["webhook_config"] = dict(webhook_config or DEFAULT_WEBHOOK_CONFIG)

        logger.info(f"Submitting article generation for {youtube_url}")
        response = await self._request(
            "POST", ARTICLE_ENDPOINT, json=payload, timeout=timeout, action="connect to API"
        )
        body = _decode_body(response)
        _raise_for_status(response, body)

        if not isinstance(body, dict):
            raise ApiError("Invalid JSON response from API", status_code=response.status_code, body=body)

        try:
            request = GenerationRequest.from_api(body, source_url=youtube_url, config=config_data)
        except ValueError as exc:
            raise ApiError(f"Invalid API response: {exc}", status_code=response.status_code, body=body) from exc

        logger.info(f"Article generation accepted with request id {request.request_id} ({request.status.value})")
        return request

    async def get_article_status(
        self,
        request_id: str,
        *,
        timeout: float | None = None,
        use_cache: bool = True,
    ) -> GenerationRequest:
        """Return the current status of a request, served from cache when fresh."""

        if use_cache:
            cached = self._cache.get(request_id)
            if cached is not None:
                return cached

        response = await self._request(
            "GET", f"{ARTICLE_ENDPOINT}{request_id}", timeout=timeout, action="get article status"
        )
        body = _decode_body(response)
        _raise_for_status(response, body)

        if not isinstance(body, dict):
            raise ApiError("Invalid JSON response from API", status_code=response.status_code, body=body)

        try:
            request = GenerationRequest.from_api(body)
        except ValueError as exc:
            raise ApiError(f"Invalid API response: {exc}", status_code=response.status_code, body=body) from exc

        self._cache.set(request)
        return request

    async def download_article_markdown(self, request_id: str, *, timeout: float | None = None) -> str:
        """Fetch the raw generated markdown for a completed request."""

        response = await self._request(
            "GET", f"{ARTICLE_ENDPOINT}{request_id}/markdown", timeout=timeout, action="download article"
        )
        if response.status_code not in _SUCCESS_CODES:
            _raise_for_status(response, _decode_body(response))
        return response.text

    async def get_queue_status(self) -> dict[str, Any]:
        """Return the API's queue status document."""

        response = await self._request(
            "GET", QUEUE_STATUS_ENDPOINT, timeout=QUEUE_STATUS_TIMEOUT, action="get queue status"
        )
        body = _decode_body(response)
        _raise_for_status(response, body)
        if not isinstance(body, dict):
            raise ApiError("Invalid JSON response from API", status_code=response.status_code, body=body)
        return body
