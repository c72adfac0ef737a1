from pathlib import Path

import pytest
from typer.testing import CliRunner

from ytarticle.cli import app
from ytarticle.models import FailureKind, GenerationRequest, SubmissionFailure, SubmissionResult
from ytarticle.orchestrator import Orchestrator

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("YTARTICLE_API_TOKEN", "token-123")
    monkeypatch.setenv("YTARTICLE_LOG_LEVEL", "WARNING")


def test_generate_rejects_invalid_url_before_any_request() -> None:
    result = runner.invoke(app, ["generate", "https://example.com/video"])

    assert result.exit_code == 2
    assert "Invalid YouTube URL" in result.output


def test_generate_requires_instructions_for_custom_style() -> None:
    result = runner.invoke(app, ["generate", "https://youtu.be/abc123", "--style", "custom"])

    assert result.exit_code == 2
    assert "style_instructions" in result.output


def test_batch_reports_invalid_url_file(tmp_path: Path) -> None:
    url_file = tmp_path / "urls.txt"
    url_file.write_text("https://youtu.be/abc123\nnot a url\n", encoding="utf-8")

    result = runner.invoke(app, ["batch", "--url-file", str(url_file)])

    assert result.exit_code == 2
    assert "line 2" in result.output


def fake_submit(submitted: list[str]):
    async def submit(self, url: str, options=None, *, subscriber=None) -> SubmissionResult:
        submitted.append(url)
        if "broke" in url:
            failure = SubmissionFailure(
                kind=FailureKind.INSUFFICIENT_FUNDS,
                message="Insufficient funds",
                current_credits=0,
                current_balance=0.1,
                minimum_balance=0.3,
            )
            return SubmissionResult(failure=failure)
        return SubmissionResult(request=GenerationRequest(request_id=f"req-{len(submitted)}", source_url=url))

    return submit


def test_generate_prints_the_request_id(monkeypatch: pytest.MonkeyPatch) -> None:
    submitted: list[str] = []
    monkeypatch.setattr(Orchestrator, "submit", fake_submit(submitted))

    result = runner.invoke(app, ["generate", "https://youtu.be/abc123"])

    assert result.exit_code == 0
    assert "Request id: req-1 (pending)" in result.output
    assert submitted == ["https://youtu.be/abc123"]


def test_generate_reports_a_refused_submission(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(Orchestrator, "submit", fake_submit([]))

    result = runner.invoke(app, ["generate", "https://youtu.be/broke"])

    assert result.exit_code == 1
    assert "Insufficient funds to generate article" in result.output
    assert "Request id" not in result.output


def test_batch_submits_canonical_urls_and_lists_skipped_lines(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    submitted: list[str] = []
    monkeypatch.setattr(Orchestrator, "submit", fake_submit(submitted))
    url_file = tmp_path / "urls.txt"
    url_file.write_text(
        "https://youtu.be/abc123\nnot a url\nhttps://www.youtube.com/watch?v=abc123\nyoutube.com/embed/xyz789\n",
        encoding="utf-8",
    )

    result = runner.invoke(app, ["batch", "--url-file", str(url_file), "--skip-invalid"])

    assert result.exit_code == 0
    assert submitted == [
        "https://www.youtube.com/watch?v=abc123",
        "https://www.youtube.com/watch?v=xyz789",
    ]
    assert "Skipped line 2: Invalid YouTube URL format" in result.output
    assert "Skipped line 3: Duplicate of line 1 (video abc123)" in result.output
    assert "Submitted 2 URL(s): 2 accepted, 0 failed." in result.output
