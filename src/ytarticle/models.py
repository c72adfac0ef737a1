"""Domain models used by ytarticle."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_COMPLETE_STAGES = {"finished", "completed"}
_ERROR_STAGES = {"error", "failed"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stringify(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class GenerationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationStatus.COMPLETED, GenerationStatus.FAILED)


class VideoInput(BaseModel):
    """A user-provided video URL and its parsed video id."""

    url: str
    video_id: str
    line: int | None = None

    @property
    def watch_url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.video_id}"


class SkippedLine(BaseModel):
    line: int
    text: str
    reason: str


class UrlFileContents(BaseModel):
    """Videos read from a URL file, plus every non-blank line that was not used."""

    videos: list[VideoInput] = Field(default_factory=list)
    skipped: list[SkippedLine] = Field(default_factory=list)


class GenerationRequest(BaseModel):
    """One article generation job as tracked by the remote API."""

    request_id: str = Field(min_length=1)
    status: GenerationStatus = GenerationStatus.PENDING
    source_url: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, value: Any) -> GenerationStatus:
        if value is None:
            return GenerationStatus.PENDING
        if isinstance(value, GenerationStatus):
            return value
        try:
            return GenerationStatus(str(value).lower())
        except ValueError:
            # Intermediate API states (queued, transcribing, ...) are all non-terminal.
            return GenerationStatus.PROCESSING

    @field_validator("error", mode="before")
    @classmethod
    def stringify_error(cls, value: Any) -> str | None:
        return _stringify(value)

    @classmethod
    def from_api(
        cls,
        body: dict[str, Any],
        *,
        source_url: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> "GenerationRequest":
        """Build a request from an API response body, accepting a ``data`` envelope."""

        data = body
        if isinstance(body.get("data"), dict):
            data = body["data"]

        request_id = data.get("request_id") or data.get("requestId") or data.get("id")
        if not request_id:
            raise ValueError(f"Missing request_id. API response: {json.dumps(body, default=str)}")

        return cls(
            request_id=str(request_id),
            status=data.get("status"),
            source_url=data.get("youtube_url") or source_url,
            config=config or {},
            error=data.get("error"),
            metadata=data.get("metadata"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_successful(self) -> bool:
        return self.status == GenerationStatus.COMPLETED and self.error is None

    @property
    def has_error(self) -> bool:
        return self.error is not None or self.status == GenerationStatus.FAILED


class ProgressEvent(BaseModel):
    """A single stage/progress update relayed from the realtime channel."""

    request_id: str
    stage: str
    progress: float = 0.0
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None

    @field_validator("progress", mode="before")
    @classmethod
    def normalize_progress(cls, value: Any) -> float:
        if value is None:
            return 0.0
        number = float(value)
        if number > 1.0:
            number = number / 100.0
        return min(max(number, 0.0), 1.0)

    @field_validator("error", mode="before")
    @classmethod
    def stringify_error(cls, value: Any) -> str | None:
        return _stringify(value)

    @model_validator(mode="after")
    def finished_implies_full_progress(self) -> "ProgressEvent":
        if self.is_complete:
            self.progress = 1.0
        return self

    @property
    def is_complete(self) -> bool:
        return self.stage in _COMPLETE_STAGES

    @property
    def is_error(self) -> bool:
        return self.error is not None or self.stage in _ERROR_STAGES

    @property
    def is_terminal(self) -> bool:
        return self.is_complete or self.is_error

    @property
    def percent(self) -> int:
        return round(self.progress * 100)

    @classmethod
    def from_frame(cls, request_id: str, frame: str | bytes) -> "ProgressEvent":
        """Parse a raw JSON frame, optionally nested under a ``data`` key."""

        try:
            payload = json.loads(frame)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid JSON frame: {exc}") from exc

        if not isinstance(payload, dict):
            raise ValueError("Frame is not a JSON object")

        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        if not data.get("stage"):
            raise ValueError("Missing stage")

        return cls(
            request_id=request_id,
            stage=str(data["stage"]),
            progress=data.get("progress"),
            message=data.get("message") or "",
            details=data.get("details") or {},
            error=data.get("error"),
        )


class WebhookEvent(str, Enum):
    COMPLETED = "article.completed"
    FAILED = "article.failed"


class WebhookData(BaseModel):
    """The ``data`` object of a webhook delivery."""

    model_config = ConfigDict(extra="allow")

    content: str = ""
    content_type: str = "markdown"
    video_info: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    cost_summary: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    video_url: str | None = None

    @model_validator(mode="before")
    @classmethod
    def unwrap_structured_content(cls, values: Any) -> Any:
        # Some deliveries send content as {"format": ..., "article": ...}.
        if isinstance(values, dict) and isinstance(values.get("content"), dict):
            content = values["content"]
            values = {**values, "content": content.get("article") or ""}
            if content.get("format") and "content_type" not in values:
                values["content_type"] = content["format"]
        return values

    @field_validator("video_info", "metadata", "cost_summary", mode="before")
    @classmethod
    def null_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("error", mode="before")
    @classmethod
    def stringify_error(cls, value: Any) -> str | None:
        return _stringify(value)


class WebhookPayload(BaseModel):
    """A parsed webhook body. ``event`` stays a string so unknown events can be reported."""

    event: str = "unknown"
    request_id: str = ""
    data: WebhookData = Field(default_factory=WebhookData)


class ArticleArtifact(BaseModel):
    """The article materialized from a completed generation."""

    request_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    content: str
    content_type: str = "markdown"
    video_url: str | None = None
    accuracy_score: float | None = None
    word_count: int | None = None
    generation_time_seconds: float | None = None
    total_cost_usd: float | None = None
    llm_cost_usd: float | None = None
    transcription_cost_usd: float | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    llm_calls: int | None = None
    cost_breakdown: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_payload(cls, payload: WebhookPayload) -> "ArticleArtifact":
        """Map an ``article.completed`` payload onto an artifact."""

        data = payload.data
        metadata = data.metadata
        cost_summary = metadata.get("cost_summary") or data.cost_summary or {}

        transcription_cost = sum(
            float(cost)
            for service, cost in (cost_summary.get("service_costs") or {}).items()
            if "transcription" in service.lower()
        )

        return cls(
            request_id=payload.request_id,
            title=data.video_info.get("title") or "Untitled Article",
            content=data.content,
            content_type=data.content_type,
            video_url=data.video_info.get("url") or data.video_url,
            accuracy_score=metadata.get("accuracy_score"),
            word_count=metadata.get("word_count"),
            generation_time_seconds=metadata.get("generation_time_seconds"),
            total_cost_usd=cost_summary.get("total_usd"),
            llm_cost_usd=cost_summary.get("llm_cost_usd"),
            transcription_cost_usd=transcription_cost if transcription_cost > 0 else None,
            input_tokens=cost_summary.get("input_tokens"),
            output_tokens=cost_summary.get("output_tokens"),
            llm_calls=cost_summary.get("llm_calls"),
            cost_breakdown=cost_summary,
        )


class WebhookOutcome(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    FAILURE_LOGGED = "failure_logged"
    REJECTED = "rejected"
    FAILED = "failed"


class WebhookResult(BaseModel):
    """Outcome of one webhook delivery, mapped to a single HTTP status."""

    outcome: WebhookOutcome
    request_id: str | None = None
    message: str = ""
    artifact_id: str | None = None
    error: str | None = None
    status_code: int = 200

    @property
    def success(self) -> bool:
        return self.outcome in (
            WebhookOutcome.CREATED,
            WebhookOutcome.ALREADY_EXISTS,
            WebhookOutcome.FAILURE_LOGGED,
        )

    def to_response(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "message": self.message, "node_id": self.artifact_id}
        return {"success": False, "error": self.error or "Processing failed"}


class ResultLocation(BaseModel):
    """Where a finished article can be viewed."""

    found: bool = False
    url: str | None = None
    title: str | None = None


class NoticeKind(str, Enum):
    STATE = "state"
    PROGRESS = "progress"
    ERROR = "error"
    CONNECTION_LOST = "connection_lost"
    RESULT = "result"
    STILL_PROCESSING = "still_processing"
    COMPLETED = "completed"


class ChannelNotice(BaseModel):
    """A message delivered to whoever is watching one request."""

    kind: NoticeKind
    request_id: str
    event: ProgressEvent | None = None
    message: str = ""
    fatal: bool = False
    state: str | None = None
    location: ResultLocation | None = None
    source: str | None = None


class FailureKind(str, Enum):
    VALIDATION = "validation"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    API = "api"


class SubmissionFailure(BaseModel):
    """A typed, user-renderable reason a submission did not start."""

    kind: FailureKind
    message: str
    detail: str = ""
    status_code: int | None = None
    retry_after: int | None = None
    current_credits: int | None = None
    current_balance: float | None = None
    minimum_balance: float | None = None


class SubmissionResult(BaseModel):
    """Either the accepted request or the reason it was refused."""

    request: GenerationRequest | None = None
    failure: SubmissionFailure | None = None

    @property
    def ok(self) -> bool:
        return self.request is not None
