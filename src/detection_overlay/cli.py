"""Main CLI entry point for Detection Overlay."""

import argparse
import sys
from pathlib import Path

from detection_overlay import __version__


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Detection Overlay - real-time object detection on video",
        prog="detection-overlay",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to YAML config file (default: config.yaml if present)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Web API command
    web_parser = subparsers.add_parser(
        "web",
        help="Run the detection API server",
    )
    web_parser.add_argument(
        "--host",
        type=str,
        help="Host to bind to (default: from settings)",
    )
    web_parser.add_argument(
        "--port",
        type=int,
        help="Port to bind to (default: from settings)",
    )

    # Run command (headless processing)
    run_parser = subparsers.add_parser(
        "run",
        help="Run detection on a video source without a UI",
    )
    run_parser.add_argument(
        "source",
        type=str,
        nargs="?",
        help="Video file, stream URL or camera index (default: from settings)",
    )
    run_parser.add_argument(
        "--duration",
        type=float,
        default=0,
        help=(
            "Run duration in seconds (0 = until a video ends, or until the first"
            " result for a still image; default: 0)"
        ),
    )
    run_parser.add_argument(
        "--output", "-o",
        type=str,
        help="Write an annotated video to this path",
    )
    run_parser.add_argument(
        "--export",
        action="store_true",
        help="Export detections to JSON when finished",
    )
    run_parser.add_argument(
        "--export-dir",
        type=str,
        help="Directory for the JSON export (default: from settings)",
    )
    run_parser.add_argument(
        "--refresh-rate",
        type=float,
        help="Scheduler ticks per second (default: from settings)",
    )

    args = parser.parse_args(argv)

    from detection_overlay.config import load_settings

    settings = load_settings(Path(args.config) if args.config else None)

    if args.command == "web":
        import uvicorn

        from detection_overlay.web.app import create_app

        host = args.host or settings.web.host
        port = args.port or settings.web.port

        print("Starting Detection Overlay API server...")
        print(f"  Host: {host}")
        print(f"  Port: {port}")
        print(f"  Weights: {settings.inference.weights}")

        uvicorn.run(create_app(settings), host=host, port=port)

    elif args.command == "run":
        import asyncio

        from pydantic import ValidationError

        from detection_overlay.config import ProcessingSettings

        if args.refresh_rate is not None:
            # Rebuild the section so the override goes through the same bounds
            try:
                settings.processing = ProcessingSettings(
                    **{**settings.processing.model_dump(), "refresh_rate": args.refresh_rate}
                )
            except ValidationError as e:
                run_parser.error(f"argument --refresh-rate: {e.errors()[0]['msg']}")

        return asyncio.run(_run_headless(args, settings))

    else:
        parser.print_help()
        return 0

    return 0


async def _run_headless(args: argparse.Namespace, settings) -> int:
    """Process a source until it ends, the duration elapses or Ctrl+C."""
    import asyncio
    import json
    import signal
    import time

    import cv2

    from detection_overlay.detection.controller import DetectionController
    from detection_overlay.detection.frame_source import VideoCaptureSource
    from detection_overlay.errors import DetectionOverlayError

    source = args.source or settings.video.source
    duration = args.duration

    print(f"Source: {source}")
    print(f"Duration: {'until end' if duration <= 0 else f'{duration}s'}")
    print(f"Refresh rate: {settings.processing.refresh_rate}")
    print()

    controller = DetectionController(settings)

    print("Loading detector...")
    try:
        await controller.initialize()
    except DetectionOverlayError as e:
        print(f"Error: {e}")
        return 1

    # Handle Ctrl+C gracefully
    stop_requested = False

    def signal_handler(sig, frame):
        nonlocal stop_requested
        if not stop_requested:
            print("\nShutdown requested, stopping...")
            stop_requested = True

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    writer = None
    try:
        try:
            await controller.start(source)
        except DetectionOverlayError as e:
            print(f"Error: {e}")
            return 1

        print("Detection running. Press Ctrl+C to stop.")
        print("-" * 50)

        start_time = time.time()
        last_written = -1
        interval = 1.0 / settings.processing.refresh_rate

        while not stop_requested:
            await asyncio.sleep(interval)

            frame_source = controller.source
            frame = frame_source.current_frame() if frame_source else None

            if args.output and frame is not None and frame.index != last_written:
                if writer is None:
                    fps = 30.0
                    if isinstance(frame_source, VideoCaptureSource):
                        fps = frame_source.source_fps or fps
                    writer = cv2.VideoWriter(
                        args.output,
                        cv2.VideoWriter_fourcc(*"mp4v"),
                        fps,
                        (frame.width, frame.height),
                    )
                writer.write(controller.annotate(frame.image))
                last_written = frame.index

            elapsed = time.time() - start_time
            if duration > 0 and elapsed >= duration:
                print(f"\nDuration reached ({duration}s)")
                break
            if isinstance(frame_source, VideoCaptureSource) and frame_source.has_ended:
                print("\nEnd of video")
                break
            if (
                duration <= 0
                and frame_source is not None
                and not isinstance(frame_source, VideoCaptureSource)
                and controller.latest_batch is not None
            ):
                # A still image never changes, so one result is the whole run
                print("\nStill image processed")
                break

        print("-" * 50)
        print("Stopping...")
        await controller.stop()

        # Print summary
        print()
        print("=" * 50)
        print("Detection Summary")
        print("=" * 50)
        print(json.dumps(controller.stats.to_dict(), indent=2))

        if args.output and writer is not None:
            print(f"Annotated video saved to: {args.output}")

        if args.export:
            try:
                path = controller.export(
                    Path(args.export_dir) if args.export_dir else None
                )
            except DetectionOverlayError as e:
                print(f"Export failed: {e}")
                return 1
            print(f"Detections exported to: {path}")

        return 0

    finally:
        if writer is not None:
            writer.release()
        await controller.shutdown()


if __name__ == "__main__":
    sys.exit(main())
