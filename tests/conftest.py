"""Shared fixtures for the viralclip test suite.

External services (Deepgram, the chat model gateway, the clipping worker and
the media host) are replaced by one httpx.MockTransport. The database is a
fresh SQLite file per test.
"""

import asyncio
import json
from typing import Any, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from viralclip.config import Settings
from viralclip.database import create_tables
from viralclip.services.clipper.pipeline import PipelineRunner, build_pipeline
from viralclip.services.clipper.transcribe import WordTimestamp
from viralclip.store import ProjectStore


SOURCE_URL = "https://media.test/uploads/talk.mp4"
AUDIO_URL = "https://clipper.test/out/talk.mp3"
CLIPPED_URL = "https://clipper.test/out/clip.mp4"

# 36 words, 0.5s apart, 0.4s long: 18 seconds of speech
SAMPLE_WORDS = (
    "Most people think success is luck. It is not. "
    "I spent ten years failing before anything worked, and every failure taught me one thing. "
    "Consistency beats talent when talent stops showing up, so keep going today."
).split()


def make_words(words=SAMPLE_WORDS, step: float = 0.5, length: float = 0.4, offset: float = 0.0) -> list[WordTimestamp]:
    return [
        WordTimestamp(word=w, start=round(offset + i * step, 3), end=round(offset + i * step + length, 3))
        for i, w in enumerate(words)
    ]


def deepgram_payload(words=SAMPLE_WORDS, duration: Optional[float] = None, utterance_size: int = 10) -> dict:
    """A Deepgram listen response for the given words."""
    timed = make_words(words)
    utterances = []
    for i in range(0, len(timed), utterance_size):
        chunk = timed[i:i + utterance_size]
        utterances.append({
            "start": chunk[0].start,
            "end": chunk[-1].end,
            "transcript": " ".join(w.word for w in chunk),
        })
    return {
        "metadata": {"duration": duration if duration is not None else len(words) * 0.5},
        "results": {
            "channels": [{
                "alternatives": [{
                    "transcript": " ".join(words),
                    "words": [
                        {
                            "word": w.word.strip(".,!?").lower(),
                            "punctuated_word": w.word,
                            "start": w.start,
                            "end": w.end,
                            "confidence": 0.98,
                        }
                        for w in timed
                    ],
                }],
            }],
            "utterances": utterances,
        },
    }


def chat_completion(arguments: Any, as_tool_call: bool = True) -> dict:
    """A chat completion response carrying the detect_viral_moment call."""
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    message: dict = {"role": "assistant", "content": None}
    if as_tool_call:
        message["tool_calls"] = [{
            "id": "call_1",
            "type": "function",
            "function": {"name": "detect_viral_moment", "arguments": arguments},
        }]
    else:
        message["content"] = arguments
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-4o-mini",
        "choices": [{"index": 0, "finish_reason": "tool_calls", "message": message}],
    }


GOOD_MOMENT = {
    "start_time": 2.0,
    "end_time": 12.0,
    "hook_text": "Success is not luck",
    "captions": "Ten years of failure. One lesson.",
    "reason": "Strong contrarian hook with a personal story",
}


class FakeServices:
    """
    Routes every outgoing request by host.

    A canned reply is a dict (200 JSON), an int (that status) or an
    exception instance (raised as a transport failure).
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.source_status = 200
        self.source_size = 5_000_000
        self.deepgram: dict[str, Any] = {}
        self.deepgram_default: Any = deepgram_payload()
        self.ai: Any = chat_completion(GOOD_MOMENT)
        self.clip: Any = {"clippedUrl": CLIPPED_URL}
        self.extract_audio: Any = {"audioUrl": AUDIO_URL}

    def _respond(self, reply: Any, request: httpx.Request) -> httpx.Response:
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, int):
            return httpx.Response(reply, json={"error": f"status {reply}"}, request=request)
        return httpx.Response(200, json=reply, request=request)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path

        if host == "media.test":
            return httpx.Response(
                self.source_status,
                headers={"content-length": str(self.source_size)},
                request=request,
            )
        if host == "deepgram.test":
            model = request.url.params.get("model", "")
            return self._respond(self.deepgram.get(model, self.deepgram_default), request)
        if host == "ai.test":
            return self._respond(self.ai, request)
        if host == "clipper.test" and path == "/clip":
            return self._respond(self.clip, request)
        if host == "clipper.test" and path == "/extract-audio":
            return self._respond(self.extract_audio, request)
        return httpx.Response(404, request=request)

    def requests_to(self, host: str, path: Optional[str] = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.host == host and (path is None or r.url.path == path)
        ]


class RecordingStore(ProjectStore):
    """ProjectStore that remembers every status it was asked to write."""

    def __init__(self, session_maker):
        super().__init__(session_maker)
        self.statuses: dict[int, list[str]] = {}

    async def set_status(self, project_id: int, status: str) -> None:
        self.statuses.setdefault(project_id, []).append(status)
        await super().set_status(project_id, status)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        deepgram_api_key="dg-test-key",
        deepgram_base_url="https://deepgram.test/v1",
        ai_api_key="ai-test-key",
        ai_base_url="https://ai.test/v1",
        clipper_url="https://clipper.test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
    )


@pytest.fixture
def session_maker(settings):
    # NullPool: each asyncio.run gets fresh connections
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    run(create_tables(engine))
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    run(engine.dispose())


@pytest.fixture
def store(session_maker):
    return RecordingStore(session_maker)


@pytest.fixture
def fake_services():
    return FakeServices()


@pytest.fixture
def http_client(fake_services):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_services.handler))
    yield client
    run(client.aclose())


@pytest.fixture
def pipeline(settings, store, http_client):
    return build_pipeline(settings, store, http_client=http_client)


@pytest.fixture
def runner(pipeline):
    return PipelineRunner(pipeline)


@pytest.fixture
def project(store):
    """A fresh project in `processing` pointing at the fake source video."""
    return run(store.create_project(SOURCE_URL, title="Talk", duration_seconds=90.0))
