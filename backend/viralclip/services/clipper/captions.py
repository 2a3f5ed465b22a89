"""Caption grouping module - turns word timestamps into short on-screen caption segments."""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Mapping, Optional, Sequence

from .transcribe import WordTimestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptionPolicy:
    """Caption grouping thresholds."""
    name: str
    max_words: int = 5
    max_duration: float = 2.0
    min_words: int = 3
    break_punctuation: str = ".!?,;:"

    def with_overrides(
        self,
        max_words: Optional[int] = None,
        max_duration: Optional[float] = None,
        min_words: Optional[int] = None,
    ) -> "CaptionPolicy":
        return CaptionPolicy(
            name=self.name,
            max_words=max_words or self.max_words,
            max_duration=max_duration or self.max_duration,
            min_words=min_words or self.min_words,
            break_punctuation=self.break_punctuation,
        )


CAPTION_POLICIES = {
    "punchy": CaptionPolicy(name="punchy", max_words=5, max_duration=2.0, min_words=3),
    "relaxed": CaptionPolicy(name="relaxed", max_words=6, max_duration=2.5, min_words=3),
}

DEFAULT_POLICY = CAPTION_POLICIES["punchy"]


def get_caption_policy(name: str) -> CaptionPolicy:
    """Get a caption policy by name."""
    try:
        return CAPTION_POLICIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown caption policy '{name}', expected one of: {', '.join(sorted(CAPTION_POLICIES))}"
        )


@dataclass(frozen=True)
class CaptionSegment:
    """A group of words displayed together as one caption."""
    start: float
    end: float
    text: str
    words: tuple[WordTimestamp, ...]

    @classmethod
    def from_words(cls, words: Sequence[WordTimestamp]) -> "CaptionSegment":
        return cls(
            start=words[0].start,
            end=words[-1].end,
            text=" ".join(w.word for w in words),
            words=tuple(words),
        )

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self) -> dict:
        return {
            "start": self.start,
            "end": self.end,
            "text": self.text,
            "words": [asdict(w) for w in self.words],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CaptionSegment":
        words = tuple(WordTimestamp(**w) for w in data.get("words") or [])
        return cls(
            start=float(data["start"]),
            end=float(data["end"]),
            text=data.get("text") or " ".join(w.word for w in words),
            words=words,
        )


def _ends_clause(word: WordTimestamp, punctuation: str) -> bool:
    return word.word.rstrip()[-1:] in punctuation if word.word.strip() else False


def segment_words(
    words: Sequence[WordTimestamp],
    policy: CaptionPolicy = DEFAULT_POLICY,
) -> list[CaptionSegment]:
    """
    Group words into caption segments in one pass.

    A group is closed when it reaches `max_words`, when the next word would
    push it past `max_duration`, or when the word just added ends in clause
    punctuation and the group has at least `min_words`. A single word longer
    than `max_duration` is emitted on its own. The last group is flushed
    whatever its size.

    Input is expected in time order and is never reordered.
    """
    segments: list[CaptionSegment] = []
    group: list[WordTimestamp] = []

    def flush():
        if group:
            segments.append(CaptionSegment.from_words(group))
            group.clear()

    for word in words:
        if group and word.end - group[0].start > policy.max_duration:
            flush()

        group.append(word)

        if len(group) >= policy.max_words:
            flush()
        elif len(group) >= policy.min_words and _ends_clause(word, policy.break_punctuation):
            flush()
        elif len(group) == 1 and word.end - word.start > policy.max_duration:
            flush()

    flush()

    logger.debug(f"Grouped {len(words)} words into {len(segments)} captions ({policy.name})")
    return segments


def words_in_range(
    words: Sequence[WordTimestamp],
    start: float,
    end: float,
    tolerance: float = 0.1,
) -> list[WordTimestamp]:
    """Select the words that fall inside a clip range."""
    return [
        w for w in words
        if w.start >= start - tolerance and w.end <= end + tolerance
    ]


def shift_words(words: Sequence[WordTimestamp], offset: float) -> list[WordTimestamp]:
    """Re-time words relative to `offset` (e.g. a clip start)."""
    return [
        WordTimestamp(
            word=w.word,
            start=max(0.0, w.start - offset),
            end=max(0.0, w.end - offset),
            confidence=w.confidence,
        )
        for w in words
    ]
