"""Transcription module using the Deepgram listen API with word-level timestamps."""

import logging
from dataclasses import dataclass, asdict, field, replace
from typing import Any, Iterable, Mapping, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from .errors import (
    DataQualityDefect,
    EmptyTranscriptError,
    ExternalServiceError,
    ServiceTimeoutError,
    SourceMediaError,
)
from .httpclient import http_session

logger = logging.getLogger(__name__)

SERVICE_NAME = "transcription"

# Words per transcript segment when the service returns no utterances
CHUNK_WORDS = 10

# Anything smaller is not a playable video
MIN_SOURCE_BYTES = 10 * 1024


@dataclass(frozen=True)
class WordTimestamp:
    """A single word with timing information."""
    word: str
    start: float
    end: float
    confidence: float = 1.0


@dataclass(frozen=True)
class TranscriptSegment:
    """A coarse transcript unit (utterance or word chunk) used for moment detection."""
    start: float
    end: float
    text: str


@dataclass
class TranscriptionResult:
    """Full transcript with segments and words."""
    text: str
    duration: float
    segments: list[TranscriptSegment]
    words: list[WordTimestamp]
    model: str = ""
    defects: list[DataQualityDefect] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()

    @property
    def word_count(self) -> int:
        return len(self.text.split())

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "duration": self.duration,
            "model": self.model,
            "segments": [asdict(s) for s in self.segments],
            "words": [asdict(w) for w in self.words],
        }

    @classmethod
    def empty(cls, duration: float = 0.0) -> "TranscriptionResult":
        return cls(text="", duration=duration, segments=[], words=[])


@dataclass
class TranscriptionOptions:
    """Request options for one transcription call."""
    model: str
    smart_format: bool = True
    word_timestamps: bool = True
    utterance_detection: bool = True
    punctuate: bool = True

    def to_query(self) -> dict[str, str]:
        return {
            "model": self.model,
            "smart_format": str(self.smart_format).lower(),
            "utterances": str(self.utterance_detection).lower(),
            "punctuate": str(self.punctuate).lower(),
        }


# Response shapes, validated where the Deepgram payload enters the system

class _DeepgramWord(BaseModel):
    word: str = ""
    punctuated_word: Optional[str] = None
    start: Optional[float] = None
    end: Optional[float] = None
    confidence: Optional[float] = None


class _DeepgramAlternative(BaseModel):
    transcript: str = ""
    words: list[_DeepgramWord] = Field(default_factory=list)


class _DeepgramChannel(BaseModel):
    alternatives: list[_DeepgramAlternative] = Field(default_factory=list)


class _DeepgramUtterance(BaseModel):
    start: Optional[float] = None
    end: Optional[float] = None
    transcript: str = ""


class _DeepgramResults(BaseModel):
    channels: list[_DeepgramChannel] = Field(default_factory=list)
    utterances: Optional[list[_DeepgramUtterance]] = None


class _DeepgramMetadata(BaseModel):
    duration: Optional[float] = None


class DeepgramResponse(BaseModel):
    metadata: _DeepgramMetadata = Field(default_factory=_DeepgramMetadata)
    results: _DeepgramResults = Field(default_factory=_DeepgramResults)


def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def sanitize_words(
    raw_words: Iterable[Mapping[str, Any]],
) -> tuple[list[WordTimestamp], list[DataQualityDefect]]:
    """
    Turn raw word dicts into WordTimestamps, clamping bad timing.

    Words are never reordered. Missing times are filled from the previous
    word, `end < start` is raised to `start`, a start earlier than the
    previous start is clamped forward, and a previous end that overlaps the
    next start is clamped back to that start.

    Returns:
        (words, defects) where defects lists every correction made
    """
    words: list[WordTimestamp] = []
    defects: list[DataQualityDefect] = []

    for i, raw in enumerate(raw_words):
        text = str(raw.get("word") or "").strip()
        if not text:
            defects.append(DataQualityDefect(i, "empty word dropped"))
            continue

        start = _as_float(raw.get("start"))
        end = _as_float(raw.get("end"))
        confidence = _as_float(raw.get("confidence"))

        if start is None:
            start = words[-1].end if words else 0.0
            defects.append(DataQualityDefect(i, "missing start"))
        if start < 0:
            defects.append(DataQualityDefect(i, f"negative start {start}"))
            start = 0.0
        if words and start < words[-1].start:
            defects.append(DataQualityDefect(i, f"start {start} before previous start {words[-1].start}"))
            start = words[-1].start
        if end is None:
            end = start
            defects.append(DataQualityDefect(i, "missing end"))
        if end < start:
            defects.append(DataQualityDefect(i, f"end {end} before start {start}"))
            end = start

        if words and words[-1].end > start:
            previous = words[-1]
            defects.append(DataQualityDefect(i - 1, f"end {previous.end} overlaps next start {start}"))
            words[-1] = replace(previous, end=max(previous.start, start))

        words.append(WordTimestamp(
            word=text,
            start=start,
            end=end,
            confidence=1.0 if confidence is None else confidence,
        ))

    if defects:
        logger.warning(f"Clamped {len(defects)} word timestamp defects (first: {defects[0]})")

    return words, defects


def sanitize_utterances(
    utterances: Iterable[Any],
    duration: float = 0.0,
) -> tuple[list[TranscriptSegment], list[DataQualityDefect]]:
    """
    Turn utterances into TranscriptSegments, filling missing timing.

    Utterances without text are dropped. A missing start takes the previous
    segment's end, a missing end takes the next known start (or the media
    duration for the last one), and `end < start` is raised to `start`.
    """
    items = list(utterances)
    segments: list[TranscriptSegment] = []
    defects: list[DataQualityDefect] = []

    for i, u in enumerate(items):
        text = (u.transcript or "").strip()
        if not text:
            defects.append(DataQualityDefect(i, "empty utterance dropped", unit="utterance"))
            continue

        start = _as_float(u.start)
        end = _as_float(u.end)

        if start is None:
            start = segments[-1].end if segments else 0.0
            defects.append(DataQualityDefect(i, "missing start", unit="utterance"))
        if end is None:
            following = [_as_float(n.start) for n in items[i + 1:]]
            following = [s for s in following if s is not None and s >= start]
            end = following[0] if following else max(start, duration)
            defects.append(DataQualityDefect(i, "missing end", unit="utterance"))
        if end < start:
            defects.append(DataQualityDefect(i, f"end {end} before start {start}", unit="utterance"))
            end = start

        segments.append(TranscriptSegment(start=start, end=end, text=text))

    if defects:
        logger.warning(f"Repaired {len(defects)} utterance timestamp defects (first: {defects[0]})")

    return segments, defects


def chunk_words(words: list[WordTimestamp], size: int = CHUNK_WORDS) -> list[TranscriptSegment]:
    """Group words into fixed-size transcript segments."""
    segments = []
    for i in range(0, len(words), size):
        chunk = words[i:i + size]
        segments.append(TranscriptSegment(
            start=chunk[0].start,
            end=chunk[-1].end,
            text=" ".join(w.word for w in chunk),
        ))
    return segments


def parse_deepgram_response(
    data: Mapping[str, Any],
    options: Optional[TranscriptionOptions] = None,
) -> TranscriptionResult:
    """Validate a Deepgram listen response and convert it to a TranscriptionResult."""
    try:
        response = DeepgramResponse.model_validate(data)
    except ValidationError as e:
        raise ExternalServiceError(SERVICE_NAME, f"malformed response: {e.error_count()} validation errors")

    duration = response.metadata.duration or 0.0
    alternative = None
    if response.results.channels and response.results.channels[0].alternatives:
        alternative = response.results.channels[0].alternatives[0]

    text = alternative.transcript if alternative else ""

    words: list[WordTimestamp] = []
    defects: list[DataQualityDefect] = []
    if alternative and (options is None or options.word_timestamps):
        words, defects = sanitize_words(
            {
                "word": w.punctuated_word or w.word,
                "start": w.start,
                "end": w.end,
                "confidence": w.confidence,
            }
            for w in alternative.words
        )

    segments: list[TranscriptSegment] = []
    utterances = response.results.utterances
    if utterances:
        logger.info(f"Using utterances: {len(utterances)}")
        segments, utterance_defects = sanitize_utterances(utterances, duration)
        defects.extend(utterance_defects)

    if not segments and words:
        logger.info(f"No utterances, chunking {len(words)} words")
        segments = chunk_words(words)
    elif not segments and text.strip():
        logger.info("Fallback: single segment from full text")
        segments = [TranscriptSegment(start=0.0, end=duration, text=text)]

    return TranscriptionResult(
        text=text,
        duration=duration,
        segments=segments,
        words=words,
        model=options.model if options else "",
        defects=defects,
    )


class DeepgramTranscriber:
    """Client for the Deepgram pre-recorded transcription endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.deepgram.com/v1",
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    async def transcribe(self, media_url: str, options: TranscriptionOptions) -> TranscriptionResult:
        """
        Transcribe remote media by URL.

        Raises:
            ServiceTimeoutError: no answer within the hard timeout
            ExternalServiceError: network failure, non-2xx status or malformed body
            EmptyTranscriptError: the model returned no text
        """
        logger.info(f"Sending media to Deepgram ({options.model})")

        try:
            async with http_session(self._http_client, self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/listen",
                    params=options.to_query(),
                    json={"url": media_url},
                    headers={"Authorization": f"Token {self.api_key}"},
                    timeout=self.timeout,
                )
        except httpx.TimeoutException:
            logger.error(f"Deepgram request timed out after {self.timeout:.0f}s")
            raise ServiceTimeoutError(SERVICE_NAME, self.timeout)
        except httpx.HTTPError as e:
            raise ExternalServiceError(SERVICE_NAME, f"request failed: {e}")

        if not resp.is_success:
            logger.error(f"Deepgram error: {resp.status_code} {resp.text[:500]}")
            raise ExternalServiceError(SERVICE_NAME, resp.text[:500], resp.status_code)

        try:
            data = resp.json()
        except ValueError:
            raise ExternalServiceError(SERVICE_NAME, "response body is not JSON")

        result = parse_deepgram_response(data, options)
        if result.is_empty:
            logger.error(f"Empty transcript from {options.model}, duration: {result.duration}")
            raise EmptyTranscriptError(options.model, result.duration)

        logger.info(
            f"Transcription complete: {len(result.segments)} segments, "
            f"{len(result.words)} words, {result.duration}s"
        )
        return result


async def probe_source_media(
    media_url: str,
    http_client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
) -> Optional[int]:
    """
    Check that the source media exists before sending it anywhere.

    Returns:
        Reported size in bytes, or None when unknown

    Raises:
        SourceMediaError: the media is gone or too small to be a video
    """
    try:
        async with http_session(http_client, timeout) as client:
            resp = await client.head(media_url, follow_redirects=True)
    except httpx.HTTPError as e:
        logger.warning(f"Could not probe source media: {e}")
        return None

    if resp.status_code in (404, 410):
        raise SourceMediaError(f"Failed to fetch video: HTTP {resp.status_code}")
    if not resp.is_success:
        logger.warning(f"Source media probe returned HTTP {resp.status_code}, continuing")
        return None

    content_length = resp.headers.get("content-length", "")
    if not content_length.isdigit():
        return None

    size = int(content_length)
    if 0 < size < MIN_SOURCE_BYTES:
        raise SourceMediaError("Video file too small or invalid (< 10KB)")
    return size
