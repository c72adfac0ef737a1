"""Realtime progress channel for a single generation request.

The channel is a small state machine::

    disconnected -> connecting -> connected -> reconnecting -> connecting ... -> closed

Every transition goes through :meth:`RealtimeChannel.dispatch`, which takes a
channel event (socket opened, frame received, socket closed, ...) and returns
a directive telling the driver loop what to do next. Tests can feed synthetic
events straight into ``dispatch`` without opening a socket.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol
from urllib.parse import quote

import httpx
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from ytarticle.config import ApiSettings, ChannelSettings
from ytarticle.errors import ApiError, MaterializationError, WebSocketError
from ytarticle.models import ChannelNotice, NoticeKind, ProgressEvent, ResultLocation
from ytarticle.store import ArticleStore

logger = logging.getLogger(__name__)

Subscriber = Callable[[ChannelNotice], Awaitable[None]]
ResultLookup = Callable[[str], Awaitable[ResultLocation]]


class Connection(Protocol):
    async def recv(self) -> str | bytes: ...

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...


Connector = Callable[..., Awaitable[Connection]]


async def websocket_connector(url: str, *, headers: dict[str, str], open_timeout: float) -> Connection:
    """Open a client connection with the ``websockets`` library."""

    return await connect(url, additional_headers=headers, open_timeout=open_timeout)


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True)
class Opened:
    connection: Connection


@dataclass(frozen=True)
class ConnectFailed:
    error: Exception


@dataclass(frozen=True)
class FrameReceived:
    data: str | bytes


@dataclass(frozen=True)
class Closed:
    clean: bool
    reason: str = ""


@dataclass(frozen=True)
class ReadFailed:
    error: Exception


ChannelEvent = Opened | ConnectFailed | FrameReceived | Closed | ReadFailed


@dataclass(frozen=True)
class Continue:
    """Keep reading frames."""


@dataclass(frozen=True)
class Reconnect:
    delay: float


@dataclass(frozen=True)
class Finish:
    event: ProgressEvent


@dataclass(frozen=True)
class Stop:
    """Leave the driver loop."""


Directive = Continue | Reconnect | Finish | Stop


def build_channel_url(websocket_url: str, request_id: str, token: str | None) -> str:
    url = f"{websocket_url.rstrip('/')}/article/{quote(request_id, safe='')}"
    if token:
        url = f"{url}?token={quote(token, safe='')}"
    return url


def redact_token(url: str) -> str:
    base, separator, _ = url.partition("?token=")
    return f"{base}?token=***" if separator else url


class RealtimeChannel:
    """Streams progress events for one request to one subscriber."""

    def __init__(
        self,
        request_id: str,
        subscriber: Subscriber,
        *,
        api_settings: ApiSettings,
        settings: ChannelSettings | None = None,
        token: str | None = None,
        lookup: ResultLookup | None = None,
        connector: Connector = websocket_connector,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.request_id = request_id
        self._subscriber = subscriber
        self._api_settings = api_settings
        self._settings = settings or ChannelSettings()
        if token is None and api_settings.api_token is not None:
            token = api_settings.api_token.get_secret_value()
        self._token = token
        self._lookup = lookup
        self._connector = connector
        self._sleep = sleep

        self._state = ChannelState.DISCONNECTED
        self._connection: Connection | None = None
        self._attempts = 0
        self._ever_connected = False
        self._closing = False
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def is_open(self) -> bool:
        return self._state in (ChannelState.CONNECTING, ChannelState.CONNECTED, ChannelState.RECONNECTING)

    @property
    def url(self) -> str:
        return build_channel_url(self._api_settings.websocket_url, self.request_id, self._token)

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": self._api_settings.user_agent}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def notify(self, notice: ChannelNotice) -> None:
        """Deliver a notice to the subscriber; subscriber failures never stop the channel."""

        try:
            await self._subscriber(notice)
        except Exception:
            logger.exception(f"Subscriber failed while handling {notice.kind.value} for request {self.request_id}")

    async def _notice(self, kind: NoticeKind, message: str = "", **fields: object) -> None:
        await self.notify(ChannelNotice(kind=kind, request_id=self.request_id, message=message, **fields))

    async def _set_state(self, state: ChannelState, message: str = "") -> None:
        self._state = state
        await self._notice(NoticeKind.STATE, message, state=state.value)

    # -- transitions -------------------------------------------------------

    async def dispatch(self, event: ChannelEvent) -> Directive:
        """Apply one channel event and return what the driver should do next."""

        if isinstance(event, Opened):
            return await self._on_opened(event)
        if isinstance(event, ConnectFailed):
            return await self._on_connect_failed(event)
        if isinstance(event, FrameReceived):
            return await self._on_frame(event)
        if isinstance(event, ReadFailed):
            return await self._on_read_failed(event)
        return await self._on_closed(event)

    async def _on_opened(self, event: Opened) -> Directive:
        self._connection = event.connection
        self._attempts = 0
        self._ever_connected = True
        logger.info(f"Realtime channel connected for request {self.request_id}")
        await self._set_state(ChannelState.CONNECTED, "Connected")
        return Continue()

    async def _on_connect_failed(self, event: ConnectFailed) -> Directive:
        if self._ever_connected:
            return await self._on_closed(Closed(clean=False, reason=str(event.error)))

        logger.error(f"Realtime channel connection failed for request {self.request_id}: {event.error!r}")
        self._state = ChannelState.CLOSED
        await self._notice(
            NoticeKind.ERROR,
            f"Failed to connect to WebSocket: {event.error}",
            fatal=True,
        )
        return Stop()

    async def _on_frame(self, event: FrameReceived) -> Directive:
        try:
            progress = ProgressEvent.from_frame(self.request_id, event.data)
        except ValueError as exc:
            logger.warning(f"Failed to parse realtime frame for request {self.request_id}: {exc}")
            await self._notice(NoticeKind.ERROR, f"Failed to parse message: {exc}")
            return Continue()

        await self._notice(NoticeKind.PROGRESS, progress.message, event=progress)
        if progress.is_terminal:
            return Finish(progress)
        return Continue()

    async def _on_read_failed(self, event: ReadFailed) -> Directive:
        if self._closing:
            return await self._on_closed(Closed(clean=True))

        logger.warning(f"Realtime channel read failed for request {self.request_id}: {event.error!r}")
        await self._notice(NoticeKind.ERROR, f"Failed to receive WebSocket message: {event.error}")
        return await self._on_closed(Closed(clean=False, reason=str(event.error)))

    async def _on_closed(self, event: Closed) -> Directive:
        await self._close_connection()

        if self._closing or event.clean:
            await self._set_state(ChannelState.CLOSED, "Connection closed")
            return Stop()

        if self._attempts < self._settings.max_reconnect_attempts:
            self._attempts += 1
            delay = self._attempts * self._settings.reconnect_base_delay
            logger.info(
                f"Realtime channel for request {self.request_id} closed unexpectedly ({event.reason or 'no reason'}); "
                f"reconnect {self._attempts}/{self._settings.max_reconnect_attempts} in {delay:.1f}s"
            )
            await self._set_state(
                ChannelState.RECONNECTING,
                f"Reconnecting... ({self._attempts}/{self._settings.max_reconnect_attempts})",
            )
            return Reconnect(delay)

        logger.error(f"Realtime channel for request {self.request_id} lost after {self._attempts} reconnect attempts")
        self._state = ChannelState.CLOSED
        await self._notice(NoticeKind.CONNECTION_LOST, "Connection lost", fatal=True)
        return Stop()

    # -- driver ------------------------------------------------------------

    async def _connect_once(self) -> Directive:
        self._state = ChannelState.CONNECTING
        logger.info(f"Connecting to WebSocket: {redact_token(self.url)}")
        try:
            connection = await self._connector(
                self.url,
                headers=self._headers(),
                open_timeout=self._settings.connect_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return await self.dispatch(ConnectFailed(exc))
        return await self.dispatch(Opened(connection))

    async def _read_once(self) -> Directive:
        connection = self._connection
        if connection is None:
            return await self.dispatch(Closed(clean=False, reason="no connection"))

        try:
            frame = await asyncio.wait_for(connection.recv(), timeout=self._settings.read_timeout)
        except asyncio.TimeoutError:
            return await self.dispatch(Closed(clean=False, reason="read timeout"))
        except ConnectionClosedOK:
            return await self.dispatch(Closed(clean=True))
        except ConnectionClosed as exc:
            return await self.dispatch(Closed(clean=False, reason=str(exc)))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return await self.dispatch(ReadFailed(exc))
        return await self.dispatch(FrameReceived(frame))

    async def _finish(self, event: ProgressEvent) -> None:
        if event.is_complete:
            await self._resolve_result()

        self._closing = True
        await self._close_connection()
        await self._set_state(ChannelState.CLOSED, "Connection closed")

    async def _resolve_result(self) -> None:
        if self._lookup is None:
            return

        attempts = self._settings.lookup_attempts
        for attempt in range(1, attempts + 1):
            try:
                location = await self._lookup(self.request_id)
            except (ApiError, MaterializationError, ValueError, OSError) as exc:
                logger.warning(f"Result lookup {attempt}/{attempts} failed for request {self.request_id}: {exc}")
                location = ResultLocation(found=False)

            if location.found:
                await self._notice(
                    NoticeKind.RESULT,
                    f"Article ready to view: {location.title or location.url}",
                    location=location,
                )
                return

            if attempt < attempts:
                await self._sleep(self._settings.lookup_delay)

        await self._notice(NoticeKind.STILL_PROCESSING, "Article processing may still be in progress")

    async def run(self) -> None:
        """Drive the channel until it closes."""

        try:
            directive = await self._connect_once()
            while True:
                if isinstance(directive, Stop):
                    break
                if isinstance(directive, Finish):
                    await self._finish(directive.event)
                    break
                if isinstance(directive, Reconnect):
                    await self._sleep(directive.delay)
                    if self._closing:
                        break
                    directive = await self._connect_once()
                    continue
                directive = await self._read_once()
        finally:
            await self._close_connection()
            self._state = ChannelState.CLOSED

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"realtime-channel-{self.request_id}")
        return self._task

    async def wait_closed(self) -> None:
        if self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    async def send(self, message: str) -> None:
        connection = self._connection
        if self._state != ChannelState.CONNECTED or connection is None:
            raise WebSocketError("Not connected to WebSocket", request_id=self.request_id)

        try:
            await connection.send(message)
        except (ConnectionClosed, OSError, RuntimeError) as exc:
            await self._notice(NoticeKind.ERROR, f"Failed to send WebSocket message: {exc}")
            raise WebSocketError(f"Failed to send WebSocket message: {exc}", request_id=self.request_id) from exc

    async def close(self) -> None:
        """Shut the channel down cleanly; no reconnect follows."""

        self._closing = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_connection()
        self._state = ChannelState.CLOSED

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await connection.close()
        except (ConnectionClosed, OSError, RuntimeError) as exc:
            logger.warning(f"Error closing WebSocket connection for request {self.request_id}: {exc}")


class HttpResultLookup:
    """Resolves a finished request to its article page through an HTTP endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def __call__(self, request_id: str) -> ResultLocation:
        url = f"{self._base_url}/{quote(request_id, safe='')}"
        try:
            response = await self._client.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise ApiError(f"Failed to look up article: {exc}", context={"url": url}) from exc

        if response.status_code == 404:
            return ResultLocation(found=False)
        if response.status_code != 200:
            raise ApiError("Unexpected result lookup response", status_code=response.status_code, body=response.text)

        return ResultLocation.model_validate(response.json())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class StoreResultLookup:
    """Resolves results straight from a local article store."""

    def __init__(self, store: ArticleStore) -> None:
        self._store = store

    async def __call__(self, request_id: str) -> ResultLocation:
        return await self._store.find(request_id)
