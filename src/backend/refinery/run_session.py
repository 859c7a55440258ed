"""
Command-line runner: refine one lesson file and print the outcome.

Usage:
    # From src/backend directory:
    python -m refinery.run_session lesson.md
    python -m refinery.run_session lesson.md --mode full_auto --max-iterations 5
    python -m refinery.run_session lesson.md --output result.json --quiet

    # Against a running API server instead of in-process:
    python -m refinery.run_session lesson.md --server http://localhost:8000
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import httpx

from refinery.core.errors import ConfigurationInvalid, RefinementError
from refinery.core.rubric import DEFAULT_RUBRIC
from refinery.core.sections import render_markdown
from refinery.core.session import run_refinement_session
from refinery.models.schemas import Outcome, SessionResult
from refinery.services.factory import build_config, build_services

logger = logging.getLogger(__name__)


def print_summary(result: SessionResult) -> None:
    print(f"\n{'=' * 60}")
    print(f"  Session {result.session_id}: {result.outcome.value.upper()}")
    print(f"{'=' * 60}")
    print(f"  Reason:       {result.reason}")
    if result.final_score is not None:
        print(f"  Final score:  {result.final_score:.3f} ({result.final_reliability.value})")
    if result.best_effort_score is not None:
        print(f"  Best score:   {result.best_effort_score:.3f}")
    print(f"  Rounds:       {result.rounds}")
    print(f"  Model calls:  {result.model_calls}")
    print(f"  Elapsed:      {result.elapsed_seconds:.1f}s")

    if result.iteration_log:
        print("\n  Iterations:")
        for rec in result.iteration_log:
            after = f"{rec.score_after:.3f}" if rec.score_after is not None else "  -  "
            print(
                f"    #{rec.iteration_index:<2} {rec.action.value:<13} {rec.status.value:<11} "
                f"{rec.score_before:.3f} -> {after}  ({rec.model_calls} calls)"
            )


async def refine_file(
    path: Path,
    mode: Optional[str] = None,
    max_iterations: Optional[int] = None,
    max_seconds: Optional[float] = None,
    max_model_calls: Optional[int] = None,
) -> SessionResult:
    config = build_config(
        mode,
        max_iterations=max_iterations,
        max_seconds=max_seconds,
        max_model_calls=max_model_calls,
    )
    services = build_services(config)
    return await run_refinement_session(path.read_text(encoding="utf-8"), DEFAULT_RUBRIC, config, services)


async def refine_remote(
    server: str,
    path: Path,
    mode: Optional[str] = None,
    max_iterations: Optional[int] = None,
    max_seconds: Optional[float] = None,
    max_model_calls: Optional[int] = None,
    poll_interval: float = 2.0,
) -> SessionResult:
    """Submit to a running API server and poll until the session is terminal."""
    body = {
        "content": path.read_text(encoding="utf-8"),
        "mode": mode,
        "max_iterations": max_iterations,
        "max_seconds": max_seconds,
        "max_model_calls": max_model_calls,
    }
    api = server.rstrip("/")
    async with httpx.AsyncClient(timeout=30) as client:
        r = await client.post(f"{api}/api/sessions/submit", json=body)
        if r.status_code == 422:
            raise ConfigurationInvalid([json.dumps(r.json().get("detail"))])
        r.raise_for_status()
        session_id = r.json()["session_id"]
        logger.info(f"Submitted session {session_id} to {api}")

        while True:
            await asyncio.sleep(poll_interval)
            r = await client.get(f"{api}/api/sessions/{session_id}")
            r.raise_for_status()
            status = r.json()
            if status.get("error"):
                raise RefinementError(status["error"])
            if status.get("result"):
                return SessionResult.model_validate(status["result"])
            logger.info(
                f"  [{session_id}] {status['phase']} round {status['round']}, "
                f"{status['model_calls']} calls, score {status.get('current_score')}"
            )


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Refine a Markdown lesson with a multi-judge evaluation loop",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m refinery.run_session lesson.md
  python -m refinery.run_session lesson.md --mode full_auto --max-model-calls 30
  python -m refinery.run_session lesson.md --output result.json --refined refined.md
  python -m refinery.run_session lesson.md --server http://localhost:8000
        """,
    )
    parser.add_argument("lesson", type=Path, help="Markdown lesson to refine")

    limits = parser.add_argument_group("Limits")
    limits.add_argument("--mode", default=None, help="Operation mode: semi_auto or full_auto")
    limits.add_argument("--max-iterations", type=int, default=None, help="Maximum evaluation rounds")
    limits.add_argument("--max-seconds", type=float, default=None, help="Wall-clock limit in seconds")
    limits.add_argument("--max-model-calls", type=int, default=None, help="Maximum model calls")

    parser.add_argument("--server", default=None, help="Submit to a running API server at this URL")

    output = parser.add_argument_group("Output")
    output.add_argument("--output", type=Path, default=None, help="Write the full result as JSON")
    output.add_argument("--refined", type=Path, default=None, help="Write the final lesson as Markdown")
    output.add_argument("--quiet", action="store_true", help="Only log warnings and errors")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if not args.lesson.exists():
        parser.error(f"lesson file not found: {args.lesson}")

    limits_kwargs = dict(
        mode=args.mode,
        max_iterations=args.max_iterations,
        max_seconds=args.max_seconds,
        max_model_calls=args.max_model_calls,
    )
    try:
        if args.server:
            result = asyncio.run(refine_remote(args.server, args.lesson, **limits_kwargs))
        else:
            result = asyncio.run(refine_file(args.lesson, **limits_kwargs))
    except ConfigurationInvalid as e:
        logger.error(str(e))
        sys.exit(2)
    except (RefinementError, httpx.HTTPError) as e:
        logger.error(f"Refinement failed: {e}")
        sys.exit(3)

    print_summary(result)

    if args.output:
        args.output.write_text(result.model_dump_json(indent=2))
        print(f"\n  Result saved to: {args.output}")
    if args.refined:
        args.refined.write_text(render_markdown(result.final_content), encoding="utf-8")
        print(f"  Refined lesson saved to: {args.refined}")

    sys.exit(0 if result.outcome == Outcome.ACCEPTED else 1)


if __name__ == "__main__":
    main()
