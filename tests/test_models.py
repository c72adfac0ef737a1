import json

import pytest

from ytarticle.models import (
    ArticleArtifact,
    GenerationRequest,
    GenerationStatus,
    ProgressEvent,
    WebhookOutcome,
    WebhookPayload,
    WebhookResult,
)


def test_generation_request_from_api_unwraps_data_and_coerces_status() -> None:
    request = GenerationRequest.from_api({"data": {"requestId": "abc", "status": "transcribing"}})
    assert request.request_id == "abc"
    assert request.status == GenerationStatus.PROCESSING
    assert not request.is_terminal

    failed = GenerationRequest.from_api({"request_id": "x", "status": "FAILED", "error": {"code": 7}})
    assert failed.is_terminal
    assert failed.has_error
    assert failed.error == '{"code": 7}'


def test_generation_request_from_api_requires_an_id() -> None:
    with pytest.raises(ValueError, match="Missing request_id"):
        GenerationRequest.from_api({"status": "pending"})


def test_progress_event_normalizes_percentages_and_clamps() -> None:
    assert ProgressEvent(request_id="r", stage="transcribing", progress=42).progress == pytest.approx(0.42)
    assert ProgressEvent(request_id="r", stage="transcribing", progress=0.3).progress == pytest.approx(0.3)
    assert ProgressEvent(request_id="r", stage="transcribing", progress=-1).progress == 0.0
    assert ProgressEvent(request_id="r", stage="transcribing", progress=None).progress == 0.0


def test_completion_stage_forces_full_progress() -> None:
    event = ProgressEvent.from_frame("r", json.dumps({"stage": "finished", "progress": 0.42}))
    assert event.progress == 1.0
    assert event.percent == 100
    assert event.is_complete and event.is_terminal


def test_progress_event_from_frame_accepts_data_envelope() -> None:
    frame = json.dumps({"type": "progress", "data": {"stage": "writing", "progress": 0.5, "message": "Drafting"}})
    event = ProgressEvent.from_frame("r", frame)
    assert event.stage == "writing"
    assert event.message == "Drafting"
    assert not event.is_terminal


def test_error_stage_is_terminal() -> None:
    event = ProgressEvent.from_frame("r", json.dumps({"stage": "error", "error": "transcript unavailable"}))
    assert event.is_error
    assert event.is_terminal
    assert not event.is_complete


@pytest.mark.parametrize("frame", ["not json", "[1, 2]", json.dumps({"progress": 0.5})])
def test_progress_event_from_frame_rejects_bad_frames(frame: str) -> None:
    with pytest.raises(ValueError):
        ProgressEvent.from_frame("r", frame)


def test_article_artifact_from_payload_maps_metadata_and_costs() -> None:
    payload = WebhookPayload.model_validate(
        {
            "event": "article.completed",
            "request_id": "req-1",
            "data": {
                "content": {"format": "markdown", "article": "# Hello"},
                "video_info": {"title": "A Talk", "url": "https://youtu.be/abc123"},
                "metadata": {
                    "word_count": 800,
                    "accuracy_score": 0.93,
                    "cost_summary": {
                        "total_usd": 0.05,
                        "llm_cost_usd": 0.03,
                        "service_costs": {"whisper_transcription": 0.015, "TRANSCRIPTION_fallback": 0.005, "llm": 0.03},
                    },
                },
            },
        }
    )

    artifact = ArticleArtifact.from_payload(payload)
    assert artifact.title == "A Talk"
    assert artifact.content == "# Hello"
    assert artifact.content_type == "markdown"
    assert artifact.video_url == "https://youtu.be/abc123"
    assert artifact.word_count == 800
    assert artifact.total_cost_usd == pytest.approx(0.05)
    assert artifact.transcription_cost_usd == pytest.approx(0.02)


def test_article_artifact_defaults_title_and_reads_top_level_costs() -> None:
    payload = WebhookPayload.model_validate(
        {
            "event": "article.completed",
            "request_id": "req-2",
            "data": {"content": "Body", "cost_summary": {"total_usd": 0.01}},
        }
    )

    artifact = ArticleArtifact.from_payload(payload)
    assert artifact.title == "Untitled Article"
    assert artifact.total_cost_usd == pytest.approx(0.01)
    assert artifact.transcription_cost_usd is None


def test_webhook_result_response_shapes() -> None:
    created = WebhookResult(outcome=WebhookOutcome.CREATED, request_id="r", message="ok", artifact_id="7")
    assert created.to_response() == {"success": True, "message": "ok", "node_id": "7"}

    rejected = WebhookResult(outcome=WebhookOutcome.REJECTED, error="Invalid signature", status_code=401)
    assert rejected.to_response() == {"success": False, "error": "Invalid signature"}
