"""
Viral Analyzer - AI-powered selection of the single most engaging moment in a transcript.
Asks an OpenAI-compatible chat model for exactly one structured tool call.
"""

import json
import logging
from dataclasses import dataclass, asdict
from typing import Any, Optional, Sequence

import httpx
import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError, model_validator

from .errors import ExternalServiceError, MalformedResponse, ServiceTimeoutError
from .transcribe import TranscriptSegment

logger = logging.getLogger(__name__)

SERVICE_NAME = "detection"

SYSTEM_PROMPT = (
    "You are a viral content strategist. From this transcript, choose the BEST 30–60 second "
    "segment for a viral short video.\n"
    "Rules:\n"
    "- prioritize emotional impact\n"
    "- prioritize surprising or valuable info\n"
    "- avoid intros/outros"
)

TOOL_NAME = "detect_viral_moment"

VIRAL_MOMENT_TOOL = {
    "type": "function",
    "function": {
        "name": TOOL_NAME,
        "description": "Detect the most viral 30-60 second moment from a video transcript",
        "parameters": {
            "type": "object",
            "properties": {
                "start_time": {"type": "number", "description": "Start time in seconds"},
                "end_time": {"type": "number", "description": "End time in seconds"},
                "hook_text": {"type": "string", "description": "A catchy viral hook sentence (max 10 words)"},
                "captions": {"type": "string", "description": "Clean caption text for the viral segment, 2-3 sentences"},
                "reason": {"type": "string", "description": "Why this moment is viral-worthy"},
            },
            "required": ["start_time", "end_time", "hook_text", "captions", "reason"],
            "additionalProperties": False,
        },
    },
}


@dataclass(frozen=True)
class ViralMoment:
    """The recommended sub-range of the source video."""
    start_time: float
    end_time: float
    hook_text: str
    captions: str
    reason: str

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def to_dict(self) -> dict:
        return asdict(self)


FALLBACK_MOMENT = ViralMoment(
    start_time=30.0,
    end_time=75.0,
    hook_text="You won't believe what happens next...",
    captions="Auto-generated captions for the most engaging segment.",
    reason="Fallback: could not parse AI response",
)


def default_moment(duration: float, length: float = 60.0, reason: str = "Default segment") -> ViralMoment:
    """Safe default used when detection is skipped or fails: the opening `length` seconds."""
    end = min(duration, length) if duration > 0 else length
    return ViralMoment(
        start_time=0.0,
        end_time=end,
        hook_text="",
        captions="",
        reason=reason,
    )


class ViralMomentSchema(BaseModel):
    """Arguments of the detect_viral_moment tool call."""
    start_time: float
    end_time: float
    hook_text: str
    captions: str
    reason: str

    @model_validator(mode="after")
    def check_range(self) -> "ViralMomentSchema":
        if self.start_time < 0:
            raise ValueError("start_time must not be negative")
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


def format_transcript(segments: Sequence[TranscriptSegment]) -> str:
    """One line per segment: `[12.3s – 45.6s] text`."""
    return "\n".join(
        f"[{s.start:.1f}s – {s.end:.1f}s] {s.text}"
        for s in segments
    )


def _extract_arguments(response: Any) -> Any:
    try:
        message = response.choices[0].message
    except (AttributeError, IndexError, TypeError):
        raise MalformedResponse("response has no choices")

    tool_calls = getattr(message, "tool_calls", None) or []
    if tool_calls:
        arguments = tool_calls[0].function.arguments
    else:
        # Some gateways answer with the bare object instead of a tool call
        arguments = getattr(message, "content", None)

    if not arguments:
        raise MalformedResponse("response has no tool call arguments")
    if isinstance(arguments, str):
        try:
            return json.loads(arguments)
        except json.JSONDecodeError as e:
            raise MalformedResponse(f"tool arguments are not JSON: {e}")
    return arguments


def parse_tool_response(response: Any) -> ViralMoment:
    """
    Validate a chat completion carrying the detect_viral_moment call.

    Raises:
        MalformedResponse: missing call, bad JSON, missing or invalid fields
    """
    arguments = _extract_arguments(response)
    try:
        parsed = ViralMomentSchema.model_validate(arguments)
    except ValidationError as e:
        raise MalformedResponse(f"tool arguments failed validation: {e.error_count()} errors")
    return ViralMoment(**parsed.model_dump())


class ViralMomentSelector:
    """Picks one viral moment per transcript using a tool-calling chat model."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.timeout = timeout
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
            http_client=http_client,
        )

    def build_messages(self, segments: Sequence[TranscriptSegment]) -> list[dict]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": f"Find the most viral 30-60 second segment:\n\n{format_transcript(segments)}",
            },
        ]

    async def select(self, segments: Sequence[TranscriptSegment]) -> ViralMoment:
        """
        Ask the model for one viral moment.

        A malformed answer yields FALLBACK_MOMENT.

        Raises:
            ServiceTimeoutError: the call timed out
            ExternalServiceError: any non-success response or connection failure
        """
        logger.info(f"Detecting viral moment across {len(segments)} transcript segments")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=self.build_messages(segments),
                tools=[VIRAL_MOMENT_TOOL],
                tool_choice={"type": "function", "function": {"name": TOOL_NAME}},
            )
        except openai.APITimeoutError:
            raise ServiceTimeoutError(SERVICE_NAME, self.timeout)
        except openai.APIStatusError as e:
            logger.error(f"Viral detection API error: {e.status_code} {e.message}")
            raise ExternalServiceError(SERVICE_NAME, e.message, e.status_code)
        except openai.APIError as e:
            raise ExternalServiceError(SERVICE_NAME, str(e))

        try:
            moment = parse_tool_response(response)
        except MalformedResponse as e:
            logger.warning(f"Could not parse AI response, using fallback moment: {e}")
            return FALLBACK_MOMENT

        logger.info(
            f"Viral moment {moment.start_time:.1f}s – {moment.end_time:.1f}s: {moment.reason}"
        )
        return moment
