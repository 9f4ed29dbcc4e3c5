"""
Panelforge Main Entry Point

    python -m panelforge serve [--host HOST] [--port PORT]
    python -m panelforge generate story.txt --output comic/ [--style comic]
"""

import argparse
import asyncio
import mimetypes
import os
import sys
from pathlib import Path

from panelforge.core.config import PanelforgeConfig, load_config, set_config
from panelforge.core.constants import ComicStyle, PipelinePhase
from panelforge.core.exceptions import ConfigurationError, PanelforgeError
from panelforge.core.logging_config import LogLevel, create_session_log, get_logger, session_scope, setup_logging
from panelforge.core.models import GenerationJob
from panelforge.llm.provider_adapter import build_adapter
from panelforge.pipelines.executors import StageExecutors
from panelforge.pipelines.orchestrator import GenerationOrchestrator
from panelforge.storage.persistence import HybridPersistence
from panelforge.utils.file_utils import ensure_directory
from panelforge.utils.image_utils import decode_data_url


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="panelforge",
        description="Panelforge - AI-Powered Story-to-Comic Generation",
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        help="Path to configuration file"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        help="Also write a session log file to this directory"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", type=str, help="Bind address (default from config)")
    serve.add_argument("--port", type=int, help="Port (default from config)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes")

    generate = subparsers.add_parser("generate", help="Generate a comic from a story file")
    generate.add_argument("story", type=str, help="Text file containing the story")
    generate.add_argument("--output", "-o", type=str, default="comic_output", help="Directory for images")
    generate.add_argument(
        "--style",
        choices=[style.value for style in ComicStyle],
        default=ComicStyle.MANGA.value,
        help="Comic style (default: manga)"
    )
    generate.add_argument("--no-dialogue", action="store_true", help="Tell the story without dialogue")
    generate.add_argument("--state-dir", type=str, help="Where job state is saved (default from config)")
    generate.add_argument(
        "--resume",
        action="store_true",
        help="Resume the saved job from its failed stage instead of starting over"
    )

    return parser


def write_images(job: GenerationJob, output_dir: Path) -> int:
    """Write character sheets and panels to ``output_dir``; returns the number written."""
    ensure_directory(output_dir)
    written = 0
    items = [(f"character_{ref.name}", ref.image) for ref in job.character_references]
    items += [(f"panel_{panel.panel_number:02d}", panel.image) for panel in job.generated_panels]
    for stem, image in items:
        if not image:
            continue
        try:
            mime_type, raw = decode_data_url(image)
        except ValueError as e:
            get_logger("main").warning(f"⚠️ Skipping {stem}: {e}")
            continue
        extension = mimetypes.guess_extension(mime_type) or ".png"
        safe_stem = "".join(c if c.isalnum() or c in "-_" else "_" for c in stem)
        (output_dir / f"{safe_stem}{extension}").write_bytes(raw)
        written += 1
    return written


async def run_generate(args, config: PanelforgeConfig) -> int:
    """Run one story to completion (or failure) and write its images."""
    logger = get_logger("main")

    state_dir = Path(args.state_dir) if args.state_dir else Path(config.storage.state_dir) / "cli"
    persistence = HybridPersistence.from_directory(state_dir, config.storage.record_capacity)
    orchestrator = GenerationOrchestrator(
        StageExecutors(build_adapter(config), config.pipeline),
        persistence=persistence,
        config=config.pipeline,
    )

    async def print_progress(event: str, data: dict) -> None:
        if event == "status":
            print(f"  {data['message']}")
        elif event == "error":
            print(f"  ✗ {data['message']}")

    orchestrator.set_event_callback(print_progress)

    if args.resume:
        if not await orchestrator.restore():
            print("No saved job to resume")
            return 1
        if orchestrator.job.phase == PipelinePhase.COMPLETE:
            logger.info("Saved job is already complete")
        else:
            await orchestrator.retry_from_failed_stage()
    else:
        story = Path(args.story).read_text(encoding="utf-8")
        await orchestrator.run(story, args.style, no_dialogue=args.no_dialogue)

    job = orchestrator.job
    count = write_images(job, Path(args.output))
    print(f"\nWrote {count} image(s) to {args.output}")

    if job.phase != PipelinePhase.COMPLETE:
        hint = " (run again with --resume)" if job.error and job.error.retryable else ""
        print(f"Generation failed: {job.error.message if job.error else 'unknown error'}{hint}")
        return 1
    print(f"✓ '{job.story_analysis.title}' complete: {len(job.generated_panels)} panel(s)")
    return 0


def main() -> int:
    """Main entry point for Panelforge."""
    args = build_parser().parse_args()

    if args.debug:
        log_level = LogLevel.DEBUG
    elif args.verbose:
        log_level = LogLevel.INFO
    else:
        log_level = LogLevel.WARNING
    log_file = create_session_log(Path(args.log_dir)) if args.log_dir else None
    setup_logging(level=log_level, log_file=log_file, verbose=args.verbose or args.debug)

    logger = get_logger("main")

    try:
        config = load_config(Path(args.config) if args.config else None)
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        return 2
    set_config(config)

    if args.command == "serve":
        from panelforge.api.main import start_server

        if args.config:
            # The server process loads configuration through its settings
            os.environ["PANELFORGE_CONFIG_PATH"] = args.config
        logger.info("Starting API server")
        start_server(host=args.host, port=args.port, reload=args.reload)
        return 0

    try:
        with session_scope("cli"):
            return asyncio.run(run_generate(args, config))
    except (PanelforgeError, OSError) as e:
        logger.error(f"❌ {e}")
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
