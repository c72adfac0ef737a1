"""Storage backends for materialized articles."""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import json
import logging
import re
from importlib.resources import files
from pathlib import Path
from typing import Any, Protocol

from jinja2 import Environment

from ytarticle.errors import MaterializationError
from ytarticle.models import ArticleArtifact, ResultLocation

logger = logging.getLogger(__name__)

_PLAIN_ID = re.compile(r"[A-Za-z0-9-]{1,100}")

_STAT_FIELDS = (
    "accuracy_score",
    "word_count",
    "generation_time_seconds",
    "total_cost_usd",
    "llm_cost_usd",
    "transcription_cost_usd",
    "input_tokens",
    "output_tokens",
    "llm_calls",
)


class ArticleStore(Protocol):
    """Where completed articles are created, keyed by request id."""

    async def exists(self, request_id: str) -> bool: ...

    async def create(self, artifact: ArticleArtifact) -> str: ...

    async def find(self, request_id: str) -> ResultLocation: ...


class InMemoryArticleStore:
    """Process-local store, mainly for tests and single-process deployments."""

    def __init__(self, public_base_url: str = "/articles") -> None:
        self._public_base_url = public_base_url.rstrip("/")
        self._ids = itertools.count(1)
        self._articles: dict[str, tuple[str, ArticleArtifact]] = {}

    @property
    def articles(self) -> dict[str, ArticleArtifact]:
        return {request_id: artifact for request_id, (_, artifact) in self._articles.items()}

    async def exists(self, request_id: str) -> bool:
        return request_id in self._articles

    async def create(self, artifact: ArticleArtifact) -> str:
        if artifact.request_id in self._articles:
            raise MaterializationError(f"Article already stored for request {artifact.request_id}")
        artifact_id = str(next(self._ids))
        self._articles[artifact.request_id] = (artifact_id, artifact)
        return artifact_id

    async def find(self, request_id: str) -> ResultLocation:
        entry = self._articles.get(request_id)
        if entry is None:
            return ResultLocation(found=False)
        artifact_id, artifact = entry
        return ResultLocation(found=True, url=f"{self._public_base_url}/{artifact_id}", title=artifact.title)


def _safe_stem(request_id: str) -> str:
    # Plain ids are used as is. Anything else gets a digest suffix, and the "_"
    # it contains keeps it apart from every plain id.
    if _PLAIN_ID.fullmatch(request_id):
        return request_id
    readable = re.sub(r"[^A-Za-z0-9-]+", "-", request_id).strip("-")[:48]
    digest = hashlib.sha256(request_id.encode("utf-8")).hexdigest()[:24]
    return f"{readable}_{digest}"


def render_article_markdown(artifact: ArticleArtifact) -> str:
    """Render an artifact as markdown with a JSON-valued front matter block."""

    stats = [
        (name, getattr(artifact, name)) for name in _STAT_FIELDS if getattr(artifact, name) is not None
    ]

    template_source = files("ytarticle").joinpath("templates/article.md.j2").read_text(encoding="utf-8")
    environment = Environment(autoescape=False, trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)
    template = environment.from_string(template_source)
    return template.render(artifact=artifact, stats=stats)


def _read_front_matter(path: Path) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for line in path.read_text(encoding="utf-8").splitlines()[1:]:
        if line == "---":
            break
        key, sep, value = line.partition(": ")
        if sep:
            fields[key] = json.loads(value)
    return fields


class MarkdownArticleStore:
    """Writes one markdown file per article into a directory.

    Plain request ids name their file directly; other ids are slugged and
    suffixed with a digest. The front matter records the request id, and
    lookups check it.
    """

    def __init__(self, directory: Path, public_base_url: str = "/articles") -> None:
        self._directory = directory
        self._public_base_url = public_base_url.rstrip("/")

    def _path(self, request_id: str) -> Path:
        return self._directory / f"{_safe_stem(request_id)}.md"

    async def _stored_fields(self, request_id: str) -> dict[str, Any] | None:
        path = self._path(request_id)
        if not path.exists():
            return None
        try:
            fields = await asyncio.to_thread(_read_front_matter, path)
        except (OSError, ValueError) as exc:
            raise MaterializationError(f"Unreadable article file {path}: {exc}") from exc
        if fields.get("request_id") != request_id:
            raise MaterializationError(
                f"Article file {path.name} belongs to request {fields.get('request_id')!r}, not {request_id!r}"
            )
        return fields

    async def exists(self, request_id: str) -> bool:
        return await self._stored_fields(request_id) is not None

    async def create(self, artifact: ArticleArtifact) -> str:
        path = self._path(artifact.request_id)
        document = render_article_markdown(artifact)

        def _write() -> None:
            self._directory.mkdir(parents=True, exist_ok=True)
            # Exclusive create: a concurrent duplicate fails instead of overwriting.
            with path.open("x", encoding="utf-8") as handle:
                handle.write(document)

        try:
            await asyncio.to_thread(_write)
        except FileExistsError as exc:
            raise MaterializationError(f"Article already stored for request {artifact.request_id}") from exc
        except OSError as exc:
            raise MaterializationError(f"Failed to write article {path}: {exc}") from exc

        logger.info(f"Wrote article {path.name} for request {artifact.request_id}")
        return path.stem

    async def find(self, request_id: str) -> ResultLocation:
        fields = await self._stored_fields(request_id)
        if fields is None:
            return ResultLocation(found=False)
        stem = _safe_stem(request_id)
        return ResultLocation(found=True, url=f"{self._public_base_url}/{stem}", title=fields.get("title"))
