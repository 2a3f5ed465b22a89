"""
Command line entry point.

    viralclip captions words.json --format vtt --policy relaxed
    viralclip process 12
    viralclip retry 12
    viralclip serve --port 8000
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from viralclip.config import get_settings
from viralclip.log_setup import configure_logging
from viralclip.services.clipper.captions import CAPTION_POLICIES, get_caption_policy, segment_words
from viralclip.services.clipper.errors import ClipperError
from viralclip.services.clipper.subtitles import encode
from viralclip.services.clipper.transcribe import sanitize_words

logger = logging.getLogger(__name__)


def load_words(path: Path) -> list[dict]:
    """Read word timestamps from a JSON list, or an object with a `words` key."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("words", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of words")
    return data


def cmd_captions(args: argparse.Namespace) -> int:
    policy = get_caption_policy(args.policy)
    words, defects = sanitize_words(load_words(Path(args.words)))
    for defect in defects:
        logger.warning(f"Timestamp defect: {defect}")

    segments = segment_words(words, policy)
    if args.format == "json":
        output = json.dumps([s.to_dict() for s in segments], indent=2, ensure_ascii=False)
    else:
        output = encode(segments, args.format)

    sys.stdout.write(output if output.endswith("\n") else output + "\n")
    return 0


async def _run_pipeline(project_id: int, retry: bool) -> dict:
    # Deferred so `captions` works without the database stack configured
    from viralclip.database import get_session_maker, init_db
    from viralclip.services.clipper.pipeline import PipelineRunner, build_pipeline
    from viralclip.store import ProjectStore

    if not await init_db():
        raise ClipperError("Database not initialized, check DATABASE_URL")

    store = ProjectStore(get_session_maker())
    runner = PipelineRunner(build_pipeline(get_settings(), store))
    outcome = await (runner.retry(project_id) if retry else runner.run(project_id))
    return outcome.to_dict()


def cmd_process(args: argparse.Namespace) -> int:
    outcome = asyncio.run(_run_pipeline(args.project_id, retry=args.command == "retry"))
    print(json.dumps(outcome, indent=2, ensure_ascii=False))
    return 0 if outcome["success"] else 1


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "viralclip.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="viralclip", description="Viral clip generator")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    captions = sub.add_parser("captions", help="Segment a word-timestamp JSON file into subtitles")
    captions.add_argument("words", help="JSON file with word timestamps")
    captions.add_argument("--format", choices=["srt", "vtt", "json"], default="srt")
    captions.add_argument("--policy", choices=sorted(CAPTION_POLICIES), default="punchy")
    captions.set_defaults(func=cmd_captions)

    process = sub.add_parser("process", help="Run the pipeline for a project")
    process.add_argument("project_id", type=int)
    process.set_defaults(func=cmd_process)

    retry = sub.add_parser("retry", help="Retry a failed project")
    retry.add_argument("project_id", type=int)
    retry.set_defaults(func=cmd_process)

    serve = sub.add_parser("serve", help="Start the API server")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level or get_settings().log_level)

    try:
        return args.func(args)
    except (ClipperError, ValueError, OSError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
