"""Playback synchronization - which caption and which word are live at a given playback time.

The video transport reports `current_time`; the synchronizer keeps the active
segment index plus a short-lived previous index used to crossfade the outgoing
caption. Word highlight states are derived on every frame and never stored.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence

from .captions import CaptionSegment
from .transcribe import WordTimestamp

logger = logging.getLogger(__name__)

NO_SEGMENT = -1

DEFAULT_CROSSFADE_SECONDS = 0.15


class TimerHandle(Protocol):
    def cancel(self) -> Any: ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]


def asyncio_scheduler(delay: float, callback: Callable[[], None]) -> TimerHandle:
    """Schedule `callback` on the running event loop."""
    return asyncio.get_running_loop().call_later(delay, callback)


class WordState(str, enum.Enum):
    ACTIVE = "active"
    PAST = "past"
    FUTURE = "future"


@dataclass(frozen=True)
class WordHighlight:
    word: str
    start: float
    end: float
    state: WordState


@dataclass(frozen=True)
class CaptionFrame:
    """Everything the caption overlay needs to draw one frame."""
    current_time: float
    active_index: int
    previous_index: int
    text: str = ""
    words: tuple[WordHighlight, ...] = ()
    outgoing_text: Optional[str] = None
    fallback_text: Optional[str] = None

    @property
    def dimmed(self) -> bool:
        return self.fallback_text is not None

    def to_dict(self) -> dict:
        return {
            "current_time": self.current_time,
            "active_index": self.active_index,
            "previous_index": self.previous_index,
            "text": self.text,
            "words": [
                {"word": w.word, "start": w.start, "end": w.end, "state": w.state.value}
                for w in self.words
            ],
            "outgoing_text": self.outgoing_text,
            "fallback_text": self.fallback_text,
            "dimmed": self.dimmed,
        }


def find_active_segment(segments: Sequence[CaptionSegment], current_time: float) -> int:
    """Index of the first segment with start <= t <= end, or -1."""
    for i, seg in enumerate(segments):
        if seg.start <= current_time <= seg.end:
            return i
    return NO_SEGMENT


def find_active_word(words: Sequence[WordTimestamp], current_time: float) -> int:
    """Index of the first word spanning `current_time`, or -1. First match wins on overlap."""
    for i, w in enumerate(words):
        if w.start <= current_time <= w.end:
            return i
    return NO_SEGMENT


def highlight_words(words: Sequence[WordTimestamp], current_time: float) -> tuple[WordHighlight, ...]:
    """Classify each word as active, past or future at `current_time`."""
    active = find_active_word(words, current_time)
    highlights = []
    for i, w in enumerate(words):
        if i == active:
            state = WordState.ACTIVE
        elif current_time > w.end:
            state = WordState.PAST
        else:
            state = WordState.FUTURE
        highlights.append(WordHighlight(word=w.word, start=w.start, end=w.end, state=state))
    return tuple(highlights)


class PlaybackSynchronizer:
    """Tracks the active caption segment for a viewing session."""

    def __init__(
        self,
        segments: Sequence[CaptionSegment],
        crossfade: float = DEFAULT_CROSSFADE_SECONDS,
        scheduler: Optional[Scheduler] = None,
        fallback_caption: Optional[str] = None,
    ):
        self.segments = tuple(segments)
        self.crossfade = crossfade
        self.fallback_caption = fallback_caption or None
        self._scheduler = scheduler or asyncio_scheduler

        self._current_time = 0.0
        self._active_index = NO_SEGMENT
        self._previous_index = NO_SEGMENT
        self._crossfade_handle: Optional[TimerHandle] = None
        self._crossfade_token = 0

    @property
    def current_time(self) -> float:
        return self._current_time

    @property
    def active_index(self) -> int:
        return self._active_index

    @property
    def previous_index(self) -> int:
        return self._previous_index

    def update(self, current_time: float) -> int:
        """Handle a time update from the video transport. Returns the active index."""
        self._current_time = current_time
        new_index = find_active_segment(self.segments, current_time)

        if new_index != self._active_index:
            if self._active_index != NO_SEGMENT and new_index != NO_SEGMENT:
                self._start_crossfade(self._active_index)
            self._active_index = new_index

        return self._active_index

    def _start_crossfade(self, outgoing: int) -> None:
        self._cancel_crossfade()
        self._previous_index = outgoing
        self._crossfade_token += 1
        token = self._crossfade_token
        self._crossfade_handle = self._scheduler(self.crossfade, lambda: self._clear_previous(token))

    def _clear_previous(self, token: int) -> None:
        # A newer crossfade owns previous_index now
        if token != self._crossfade_token:
            return
        self._previous_index = NO_SEGMENT
        self._crossfade_handle = None

    def _cancel_crossfade(self) -> None:
        if self._crossfade_handle is not None:
            self._crossfade_handle.cancel()
            self._crossfade_handle = None

    def frame(self) -> CaptionFrame:
        """Build the overlay state for the current time."""
        t = self._current_time

        outgoing_text = None
        if self._previous_index != NO_SEGMENT and self._previous_index < len(self.segments):
            outgoing_text = self.segments[self._previous_index].text

        if self._active_index == NO_SEGMENT:
            return CaptionFrame(
                current_time=t,
                active_index=NO_SEGMENT,
                previous_index=self._previous_index,
                outgoing_text=outgoing_text,
                fallback_text=self.fallback_caption,
            )

        segment = self.segments[self._active_index]
        return CaptionFrame(
            current_time=t,
            active_index=self._active_index,
            previous_index=self._previous_index,
            text=segment.text,
            words=highlight_words(segment.words, t),
            outgoing_text=outgoing_text,
        )

    def close(self) -> None:
        """Drop any pending crossfade timer."""
        self._cancel_crossfade()
        self._crossfade_token += 1
        self._previous_index = NO_SEGMENT


class _FrameTimer:

    def __init__(self, due: float, callback: Callable[[], None]):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class _FrameClock:
    """Scheduler driven by frame times instead of the wall clock."""

    def __init__(self):
        self.now = 0.0
        self._timers: list[_FrameTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _FrameTimer(self.now + delay, callback)
        self._timers.append(timer)
        return timer

    def advance(self, elapsed: float) -> None:
        self.now += elapsed
        due = [t for t in self._timers if not t.cancelled and t.due <= self.now]
        self._timers = [t for t in self._timers if t not in due]
        for timer in due:
            timer.callback()


def render_frame(
    segments: Sequence[CaptionSegment],
    current_time: float,
    fallback_caption: Optional[str] = None,
    previous_time: Optional[float] = None,
    crossfade: float = DEFAULT_CROSSFADE_SECONDS,
) -> CaptionFrame:
    """
    Frame at `current_time` without a live session.

    With `previous_time`, a segment change between the two frames is
    reported as an ongoing crossfade (`previous_index` and `outgoing_text`
    set) only while less than `crossfade` seconds separate them.
    """
    clock = _FrameClock()
    sync = PlaybackSynchronizer(
        segments,
        crossfade=crossfade,
        scheduler=clock,
        fallback_caption=fallback_caption,
    )
    if previous_time is not None:
        sync.update(previous_time)
    sync.update(current_time)
    if previous_time is not None:
        clock.advance(abs(current_time - previous_time))
    frame = sync.frame()
    sync.close()
    return frame
