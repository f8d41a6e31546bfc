"""Command-line client for the change-detection image server.

Loads the dataset list, displays the first pair and optionally walks every
dataset, reporting load progress and cache performance on the terminal.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

from change_viewer.image_engine import ImageEngine
from change_viewer.image_engine.cache import CacheEntry
from change_viewer.logger import get_logger
from change_viewer.navigation import NavigationController, PerformanceStatus, ViewerListener, ViewSelection
from change_viewer.settings_manager import SettingsManager

logger = get_logger("main")

_DEFAULT_SETTINGS = Path.home() / ".change_viewer" / "settings.json"


def _apply_cli_logging_options(argv: list[str]) -> list[str]:
    """Mirror --log-level/--log-cats into the env vars read by the logger."""
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--log-level", help="Set log level")
    parser.add_argument("--log-cats", help="Set log categories")
    args, remaining = parser.parse_known_args(argv)
    if args.log_level:
        os.environ["CHANGE_VIEWER_LOG_LEVEL"] = args.log_level
    if args.log_cats:
        os.environ["CHANGE_VIEWER_LOG_CATS"] = args.log_cats
    # Re-apply so the new env values take effect on the existing handler.
    get_logger()
    return remaining


class ConsoleListener(ViewerListener):
    """Prints controller status to stdout."""

    def __init__(self, stream=None) -> None:
        self.stream = stream or sys.stdout

    def _print(self, text: str) -> None:
        print(text, file=self.stream, flush=True)

    def on_status(self, text: str) -> None:
        self._print(text)

    def on_progress(self, percent: int, eta: float | None, speed: float, total: int) -> None:
        eta_text = f"{eta:.1f}s" if eta is not None else "--"
        self._print(f"  {percent:3d}%  {speed / 1024:8.1f} KB/s  eta {eta_text}  ({total} bytes)")

    def on_display(self, entry: CacheEntry, url: str, hit_rate: float) -> None:
        image = entry.image
        self._print(
            f"displaying {url} [{image.natural_width}x{image.natural_height}] "
            f"context={entry.context} hit_rate={hit_rate:.0f}%"
        )

    def on_position(self, index: int, total: int) -> None:
        self._print(f"dataset {index + 1}/{total}")

    def on_performance(self, status: PerformanceStatus) -> None:
        snap = status.snapshot
        self._print(
            f"cache {status.cache_size}/{status.max_cache_size}  "
            f"memory {snap.total_memory_used / 1024 / 1024:.1f}MB  "
            f"network {snap.network_quality.value}  preloads {status.active_preloads}"
        )

    def on_retry_available(self, url: str) -> None:
        self._print(f"giving up on {url}; run again to retry")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="change-viewer", description="Before/after imagery client")
    parser.add_argument("--settings", default=str(_DEFAULT_SETTINGS), help="Settings JSON path")
    parser.add_argument("--server", help="Image server base URL")
    parser.add_argument("--project", help="Dataset project name")
    parser.add_argument("--type", dest="variant", choices=["pre", "post", "change"], default="pre")
    parser.add_argument("--full", action="store_true", help="Use full-resolution images")
    parser.add_argument("--no-veg", action="store_true", help="Show images without vegetation suppression")
    parser.add_argument("--walk", action="store_true", help="Step through every dataset")
    return parser


async def _run_async(args: argparse.Namespace, settings: SettingsManager) -> int:
    config = settings.engine_config()
    if args.server:
        config.base_url = args.server.rstrip("/")
    project = args.project or settings.project

    async with ImageEngine(config) as engine:
        nav = NavigationController(engine, ConsoleListener(), settle_delay=settings.settle_delay)
        nav.selection = ViewSelection(
            variant=args.variant,
            full_resolution=args.full or settings.use_full_resolution,
            veg_filter=args.no_veg or settings.use_vegetation_filter,
        )
        if not await nav.load_datasets(project):
            return 1
        if args.walk:
            for index in range(1, len(nav.datasets)):
                if nav.retry_available:
                    break
                await nav.select_dataset(index)
        engine.governor.log_report()
        return 0 if not nav.retry_available else 2


def run(argv: list[str] | None = None) -> int:
    """Application entrypoint (packaging-friendly)."""
    if argv is None:
        argv = sys.argv
    remaining = _apply_cli_logging_options(argv[1:])
    args = build_parser().parse_args(remaining)
    settings = SettingsManager(args.settings)
    try:
        return asyncio.run(_run_async(args, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(run())
