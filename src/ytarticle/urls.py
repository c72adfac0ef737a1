"""Video URL validation and URL-file ingestion utilities."""

from __future__ import annotations

import re
from pathlib import Path
from urllib.parse import parse_qs, urlparse

from ytarticle.errors import RequestValidationError
from ytarticle.models import SkippedLine, UrlFileContents, VideoInput

_VIDEO_URL_RE = re.compile(
    r"^(https?://)?(www\.)?(youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)[\w-]+(&[\w=]*)?$",
    re.IGNORECASE,
)
_INLINE_COMMENT_RE = re.compile(r"\s+#")


def validate_video_url(url: str) -> str:
    """Return the stripped URL if it has a supported YouTube video shape."""

    candidate = url.strip()
    if not _VIDEO_URL_RE.match(candidate):
        raise RequestValidationError(f"Invalid YouTube URL format: '{url}'")
    return candidate


def extract_video_id(url: str) -> str:
    """Extract the video id from a watch, short or embed URL."""

    candidate = validate_video_url(url)
    if "://" not in candidate:
        candidate = f"https://{candidate}"

    parsed = urlparse(candidate)
    host = parsed.netloc.lower().removeprefix("www.")

    if host == "youtu.be":
        return parsed.path.strip("/")

    if parsed.path.startswith("/embed/"):
        return parsed.path.removeprefix("/embed/").strip("/")

    return parse_qs(parsed.query)["v"][0]


def load_url_file(path: Path, *, skip_invalid: bool = False) -> UrlFileContents:
    """Read a URL file (one video per line, ``#`` comments allowed anywhere).

    Videos are deduplicated by video id, so watch, short and embed links to
    the same video count once. Each dropped line is kept in ``skipped`` with
    its reason. Invalid lines raise unless ``skip_invalid`` is set.
    """

    if not path.exists() or not path.is_file():
        raise RequestValidationError(f"URL file not found: {path}")

    contents = UrlFileContents()
    first_seen: dict[str, int] = {}

    for line_number, raw_line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = _INLINE_COMMENT_RE.split(raw_line, maxsplit=1)[0].strip()
        if not line or line.startswith("#"):
            continue

        try:
            video_id = extract_video_id(line)
        except RequestValidationError as exc:
            if not skip_invalid:
                raise RequestValidationError(f"Invalid URL at line {line_number}: {exc}") from exc
            contents.skipped.append(SkippedLine(line=line_number, text=line, reason=str(exc)))
            continue

        if video_id in first_seen:
            contents.skipped.append(
                SkippedLine(
                    line=line_number,
                    text=line,
                    reason=f"Duplicate of line {first_seen[video_id]} (video {video_id})",
                )
            )
            continue

        first_seen[video_id] = line_number
        contents.videos.append(VideoInput(url=line, video_id=video_id, line=line_number))

    if not contents.videos:
        raise RequestValidationError("No valid URLs found in URL file")

    return contents
