"""Command-line interface for running the video transcript pipeline."""

import argparse
import asyncio

from src.utils.logging import get_logger

from .config import get_config
from .costs import format_cost
from .errors import ProcessingError, StateTransitionError
from .monitor import RecoveryOptions, StuckVideoMonitor
from .pipeline import VideoProcessingPipeline
from .state_machine import minutes_in_stage, utcnow
from .vector_search import VectorSearchService, format_result_for_rag

logger = get_logger(__name__)

DIVIDER = "=" * 60


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Video Transcript Pipeline - Transcribe, chunk and embed videos",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run every remaining stage for one video
  python -m src.video_pipeline.cli process 6f1c...

  # Process all pending videos of one creator
  python -m src.video_pipeline.cli process-pending --creator-id creator_123

  # Search the embedded chunks
  python -m src.video_pipeline.cli search "how do I price my course" --match-count 3

  # Preview stuck-video recovery without changing anything
  python -m src.video_pipeline.cli recover --dry-run
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    process = subparsers.add_parser("process", help="Process one video end to end")
    process.add_argument("video_id")

    pending = subparsers.add_parser("process-pending", help="Process every pending video")
    pending.add_argument("--creator-id", help="Only videos of this creator")

    retry = subparsers.add_parser("retry", help="Retry a failed video")
    retry.add_argument("video_id")

    search = subparsers.add_parser("search", help="Semantic search over chunks")
    search.add_argument("query")
    search.add_argument("--video-id", action="append", dest="video_ids")
    search.add_argument("--match-count", type=int)
    search.add_argument("--threshold", type=float)

    stuck = subparsers.add_parser("stuck", help="List videos stuck in a stage")
    stuck.add_argument("--creator-id", help="Only videos of this creator")

    recover = subparsers.add_parser("recover", help="Recover stuck videos")
    recover.add_argument("--force", action="store_true", help="Ignore attempt limits")
    recover.add_argument("--dry-run", action="store_true", help="Only report planned actions")
    recover.add_argument("--video-id", action="append", dest="video_ids")

    return parser


async def run_process(pipeline: VideoProcessingPipeline, args: argparse.Namespace) -> int:
    outcome = await pipeline.process_video(args.video_id)
    print(f"Video: {outcome.video_id}")
    print(f"Result: {outcome.status}")
    print(f"Chunks: {outcome.chunks}")
    print(f"Cost: {format_cost(outcome.cost_usd)}")
    if outcome.error:
        print(f"Error: {outcome.error}")
    return 0 if outcome.status != "failed" else 1


async def run_process_pending(
    pipeline: VideoProcessingPipeline, args: argparse.Namespace
) -> int:
    result = await pipeline.process_pending(args.creator_id)

    print(f"Total pending videos: {result.total_videos}")
    print(f"Successfully processed: {result.processed}")
    print(f"Failed: {result.failed}")
    print(f"Skipped: {result.skipped}")
    print(f"Total chunks created: {result.chunks_created}")
    print(f"Total cost: {format_cost(result.total_cost_usd)}")

    if result.errors:
        print("\nErrors encountered:")
        for error in result.errors:
            print(f"  - {error}")
    return 0 if result.failed == 0 else 1


async def run_retry(pipeline: VideoProcessingPipeline, args: argparse.Namespace) -> int:
    try:
        await pipeline.retry_video(args.video_id)
    except (ProcessingError, StateTransitionError) as e:
        print(f"Retry refused: {e}")
        return 1

    video = await pipeline.storage_service.get_video(args.video_id)
    print(f"Video {args.video_id} retried; status is now {video.status.value if video else '?'}")
    return 0


async def run_search(pipeline: VideoProcessingPipeline, args: argparse.Namespace) -> int:
    search_service = VectorSearchService(
        pipeline.config, pipeline.storage_service, pipeline.embedding_service
    )
    options = search_service.default_options()
    updates = {
        "match_count": args.match_count,
        "similarity_threshold": args.threshold,
        "filter_video_ids": args.video_ids,
    }
    options = options.model_copy(update={k: v for k, v in updates.items() if v is not None})

    results = await search_service.search_chunks(args.query, options)
    if not results:
        print("No matching chunks found.")
        return 0

    for i, result in enumerate(results, 1):
        print(f"{i}. ({result.similarity:.3f}) {format_result_for_rag(result)}")
    return 0


async def run_stuck(pipeline: VideoProcessingPipeline, args: argparse.Namespace) -> int:
    now = utcnow()
    videos = await pipeline.state_machine.get_stuck_videos(now, args.creator_id)
    if not videos:
        print("No stuck videos.")
        return 0

    for video in videos:
        minutes = minutes_in_stage(video, now)
        print(f"{video.id}  {video.status.value:<12} {minutes:>8.1f} min  {video.title or ''}")
    return 0


async def run_recover(pipeline: VideoProcessingPipeline, args: argparse.Namespace) -> int:
    monitor = StuckVideoMonitor(pipeline)
    report = await monitor.recover_stuck_videos(
        options=RecoveryOptions(
            force=args.force,
            dry_run=args.dry_run,
            video_ids=args.video_ids,
        )
    )

    print(f"Checked: {report.checked}")
    print(f"Recovered: {report.recovered}")
    print(f"Failed: {report.failed}")
    print(f"Skipped: {report.skipped}")
    for outcome in report.results:
        action = outcome.action.value if outcome.action else "-"
        print(f"  {outcome.video_id}  {outcome.status:<9} {action:<17} {outcome.reason}")
    return 0 if not report.errors else 1


COMMANDS = {
    "process": run_process,
    "process-pending": run_process_pending,
    "retry": run_retry,
    "search": run_search,
    "stuck": run_stuck,
    "recover": run_recover,
}


async def main(argv: list[str] | None = None) -> int:
    """CLI entry point for the video transcript pipeline."""
    args = build_parser().parse_args(argv)
    config = get_config()

    logger.info("cli_started", command=args.command)

    print("\n" + DIVIDER)
    print(f"Video Transcript Pipeline: {args.command}")
    print(DIVIDER)

    pipeline = VideoProcessingPipeline(config)
    try:
        exit_code = await COMMANDS[args.command](pipeline, args)
    except Exception as e:
        logger.exception("cli_command_failed", command=args.command, error_type=type(e).__name__)
        print(f"\nCommand failed: {e}")
        return 1

    print(DIVIDER + "\n")
    logger.info("cli_completed", command=args.command, exit_code=exit_code)
    return exit_code


def run() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
