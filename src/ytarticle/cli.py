"""Typer CLI entrypoint for ytarticle."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError

from ytarticle.api_client import ApiClient
from ytarticle.config import ArticleLength, Audience, GenerationOptions, OutputFormat, WritingStyle, load_settings
from ytarticle.errors import ApiError, RequestValidationError
from ytarticle.logging_setup import configure_logging
from ytarticle.models import (
    ChannelNotice,
    FailureKind,
    GenerationRequest,
    NoticeKind,
    SubmissionFailure,
    SubmissionResult,
)
from ytarticle.orchestrator import Orchestrator, user_message
from ytarticle.urls import load_url_file

app = typer.Typer(help="Turn YouTube videos into articles through the generation API.", no_args_is_help=True)


@app.callback()
def main(log_level: str = typer.Option("", help="Override YTARTICLE_LOG_LEVEL.")) -> None:
    """ytarticle command group."""

    configure_logging(log_level or load_settings().log_level)


def _echo_notice(notice: ChannelNotice) -> None:
    if notice.kind == NoticeKind.PROGRESS and notice.event is not None:
        event = notice.event
        line = f"[{event.percent:3d}%] {event.stage}"
        if event.message:
            line = f"{line}: {event.message}"
        typer.echo(line, err=event.is_error)
    elif notice.kind == NoticeKind.RESULT and notice.location is not None:
        typer.echo(f"Article ready: {notice.location.url}")
    elif notice.kind in (NoticeKind.ERROR, NoticeKind.CONNECTION_LOST):
        typer.echo(notice.message, err=True)
    elif notice.kind == NoticeKind.STATE and notice.state == "reconnecting":
        typer.echo(notice.message, err=True)
    elif notice.kind == NoticeKind.STILL_PROCESSING:
        typer.echo(f"{notice.message}. Check again with: ytarticle status {notice.request_id}")


async def _print_notice(notice: ChannelNotice) -> None:
    _echo_notice(notice)


async def _submit(url: str, options: GenerationOptions, watch: bool) -> SubmissionResult:
    orchestrator = Orchestrator.from_settings(load_settings())
    try:
        result = await orchestrator.submit(url, options, subscriber=_print_notice if watch else None)
        if result.request is not None and watch:
            entry = orchestrator.registry.get(result.request.request_id)
            if entry is not None and entry.channel is not None:
                await entry.channel.wait_closed()
        return result
    finally:
        await orchestrator.aclose()


def _report_failure(failure: SubmissionFailure) -> None:
    typer.echo(user_message(failure), err=True)
    if failure.detail:
        typer.echo(f"Detail: {failure.detail}", err=True)
    raise typer.Exit(code=2 if failure.kind == FailureKind.VALIDATION else 1)


@app.command()
def generate(
    url: str = typer.Argument(..., help="YouTube video URL."),
    style: WritingStyle = typer.Option(WritingStyle.CASUAL),
    audience: Audience = typer.Option(Audience.GENERAL),
    length: ArticleLength = typer.Option(ArticleLength.STANDARD),
    output_format: OutputFormat = typer.Option(OutputFormat.MARKDOWN),
    language: str = typer.Option("en"),
    style_instructions: str | None = typer.Option(None),
    audience_instructions: str | None = typer.Option(None),
    watch: bool = typer.Option(False, "--watch/--no-watch", help="Stream progress until the article is ready."),
) -> None:
    """Submit one video for article generation."""

    try:
        options = GenerationOptions(
            style=style,
            audience=audience,
            length=length,
            output_format=output_format,
            language=language,
            style_instructions=style_instructions,
            audience_instructions=audience_instructions,
        )
    except ValidationError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    result = asyncio.run(_submit(url, options, watch))
    if result.failure is not None:
        _report_failure(result.failure)
    if result.request is not None:
        typer.echo(f"Request id: {result.request.request_id} ({result.request.status.value})")


@app.command()
def batch(
    url_file: Path = typer.Option(..., exists=True, readable=True, dir_okay=False),
    continue_on_error: bool = typer.Option(False),
    skip_invalid: bool = typer.Option(False, help="Skip lines that are not video URLs instead of stopping."),
) -> None:
    """Submit every video listed in a URL file."""

    try:
        contents = load_url_file(url_file, skip_invalid=skip_invalid)
    except RequestValidationError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    for skipped in contents.skipped:
        typer.echo(f"Skipped line {skipped.line}: {skipped.reason}", err=True)

    async def _run() -> tuple[list[str], list[str]]:
        orchestrator = Orchestrator.from_settings(load_settings())
        accepted: list[str] = []
        failures: list[str] = []
        try:
            for video in contents.videos:
                result = await orchestrator.submit(video.watch_url)
                if result.request is not None:
                    accepted.append(f"{video.watch_url}: {result.request.request_id}")
                    continue
                if result.failure is not None:
                    failures.append(f"{video.watch_url}: {user_message(result.failure)}")
                if not continue_on_error:
                    break
        finally:
            await orchestrator.aclose()
        return accepted, failures

    accepted, failures = asyncio.run(_run())
    typer.echo(f"Submitted {len(contents.videos)} URL(s): {len(accepted)} accepted, {len(failures)} failed.")
    for line in accepted:
        typer.echo(f"Accepted: {line}")

    if failures:
        typer.echo("Failures:", err=True)
        for failure in failures:
            typer.echo(f"- {failure}", err=True)
        raise typer.Exit(code=1)


@app.command()
def status(
    request_id: str = typer.Argument(...),
    cache: bool = typer.Option(True, "--cache/--no-cache"),
) -> None:
    """Show the current status of a request."""

    async def _run() -> GenerationRequest:
        async with ApiClient(load_settings().api) as client:
            return await client.get_article_status(request_id, use_cache=cache)

    try:
        request = asyncio.run(_run())
    except ApiError as exc:
        typer.echo(f"Status check failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(f"{request.request_id}: {request.status.value}")
    if request.error:
        typer.echo(f"Error: {request.error}", err=True)


@app.command()
def download(
    request_id: str = typer.Argument(...),
    output: Path | None = typer.Option(None, dir_okay=False),
) -> None:
    """Download the generated markdown for a completed request."""

    async def _run() -> str:
        async with ApiClient(load_settings().api) as client:
            return await client.download_article_markdown(request_id)

    try:
        markdown = asyncio.run(_run())
    except ApiError as exc:
        typer.echo(f"Download failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    if output is None:
        typer.echo(markdown)
        return

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(markdown, encoding="utf-8")
    typer.echo(f"Output: {output}")


@app.command()
def queue() -> None:
    """Show the API's processing queue."""

    async def _run() -> dict[str, Any]:
        async with ApiClient(load_settings().api) as client:
            return await client.get_queue_status()

    try:
        body = asyncio.run(_run())
    except ApiError as exc:
        typer.echo(f"Queue status failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    for key, value in body.items():
        typer.echo(f"{key}: {value}")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1"),
    port: int = typer.Option(8080, min=1, max=65535),
) -> None:
    """Run the webhook and progress server."""

    import uvicorn

    from ytarticle.server import create_app

    uvicorn.run(create_app(load_settings()), host=host, port=port, log_config=None)
