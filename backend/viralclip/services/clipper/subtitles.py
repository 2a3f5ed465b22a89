"""SRT and WebVTT encoding and parsing for caption segments."""

import logging
import math
import re
from dataclasses import dataclass
from typing import Sequence

from .captions import CaptionSegment

logger = logging.getLogger(__name__)

SUBTITLE_CONTENT_TYPES = {
    "srt": "text/plain",
    "vtt": "text/vtt",
}

_CUE_TIMING = re.compile(
    r"^\s*(\d{2,}):(\d{2}):(\d{2})[,.](\d{3})\s*-->\s*(\d{2,}):(\d{2}):(\d{2})[,.](\d{3})"
)


@dataclass(frozen=True)
class SubtitleCue:
    """A parsed subtitle entry."""
    start: float
    end: float
    text: str


def to_milliseconds(seconds: float) -> int:
    """Seconds to whole milliseconds, truncating, never negative."""
    if seconds is None or math.isnan(seconds) or seconds < 0:
        return 0
    # Absorb float noise such as 1.234 * 1000 == 1233.9999...
    return int(math.floor(seconds * 1000 + 1e-6))


def format_timestamp(seconds: float, separator: str = ",") -> str:
    """Convert seconds to HH:MM:SS,mmm (SRT) or HH:MM:SS.mmm (VTT)."""
    total_ms = to_milliseconds(seconds)
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}{separator}{millis:03d}"


def to_srt(segments: Sequence[CaptionSegment]) -> str:
    """Encode caption segments as an SRT document."""
    blocks = []
    for i, seg in enumerate(segments, 1):
        blocks.append(
            f"{i}\n"
            f"{format_timestamp(seg.start, ',')} --> {format_timestamp(seg.end, ',')}\n"
            f"{seg.text}\n"
        )
    return "\n".join(blocks)


def to_vtt(segments: Sequence[CaptionSegment]) -> str:
    """Encode caption segments as a WebVTT document."""
    blocks = ["WEBVTT\n"]
    for seg in segments:
        blocks.append(
            f"{format_timestamp(seg.start, '.')} --> {format_timestamp(seg.end, '.')}\n"
            f"{seg.text}\n"
        )
    return "\n".join(blocks)


def encode(segments: Sequence[CaptionSegment], fmt: str) -> str:
    """Encode segments in the named format ("srt" or "vtt")."""
    if fmt == "srt":
        return to_srt(segments)
    if fmt == "vtt":
        return to_vtt(segments)
    raise ValueError(f"Unsupported subtitle format: {fmt}")


def _parse_cues(content: str) -> list[SubtitleCue]:
    cues = []
    blocks = re.split(r"\n\s*\n", content.replace("\r\n", "\n").strip())
    for block in blocks:
        lines = block.split("\n")
        for i, line in enumerate(lines):
            match = _CUE_TIMING.match(line)
            if not match:
                continue
            g = [int(x) for x in match.groups()]
            start = g[0] * 3600 + g[1] * 60 + g[2] + g[3] / 1000
            end = g[4] * 3600 + g[5] * 60 + g[6] + g[7] / 1000
            cues.append(SubtitleCue(
                start=round(start, 3),
                end=round(end, 3),
                text="\n".join(lines[i + 1:]).strip(),
            ))
            break
    return cues


def parse_srt(content: str) -> list[SubtitleCue]:
    """Parse an SRT document into cues."""
    return _parse_cues(content)


def parse_vtt(content: str) -> list[SubtitleCue]:
    """Parse a WebVTT document into cues."""
    body = content.lstrip("\ufeff")
    if not body.startswith("WEBVTT"):
        raise ValueError("Missing WEBVTT header")
    return _parse_cues(body)
