"""
Command line entry point: ``crates-mirror mirror`` and ``crates-mirror serve``.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from crates_mirror.core.settings import load_settings
from crates_mirror.domain.errors import MirrorError
from crates_mirror.services.mirror.pipeline import MirrorPipeline, format_report
from crates_mirror.services.mirror.progress import LoggingProgress

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INCOMPLETE = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crates-mirror", description="Offline crates.io mirror")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--settings", type=Path, help="YAML settings file")
    common.add_argument("-i", "--index", dest="index_dir", type=Path, help="Checked-out registry index")
    common.add_argument("-s", "--store", dest="store_dir", type=Path, help="Crate archive store")
    common.add_argument("--snapshot", dest="snapshot_path", type=Path, help="Record snapshot (JSON lines)")
    common.add_argument("--parse-workers", type=int, help="Index parser workers (default: 4)")

    mirror = sub.add_parser("mirror", parents=[common], help="Bring the store up to date with the index")
    strategy = mirror.add_mutually_exclusive_group()
    strategy.add_argument(
        "-e", "--existing", dest="manifest_path", type=Path,
        help="Manifest of '<sha256> <path>' lines for archives already mirrored",
    )
    strategy.add_argument(
        "--verify", dest="verify_store", action="store_true", default=None,
        help="Re-hash every archive already in the store",
    )
    mirror.add_argument(
        "--search-path", dest="search_paths", action="append", type=Path,
        help="Directory to search for existing archives before downloading (repeatable, in order)",
    )
    mirror.add_argument("--limit", dest="download_limit", type=int, help="Approximate per-worker download cap")
    mirror.add_argument("--workers", dest="fetch_workers", type=int, help="Concurrent downloads (default: 20)")
    mirror.add_argument("--verify-workers", type=int, help="Concurrent hashers for --verify (default: 8)")
    mirror.add_argument("--timeout", dest="request_timeout", type=float, help="Per-request timeout in seconds")
    mirror.add_argument("--diff", dest="diff_path", type=Path, help="Write paths still to be fetched to this file")
    mirror.add_argument("--progress-every", type=int, default=1000, help="Log progress every N items")

    serve = sub.add_parser("serve", parents=[common], help="Serve mirrored archives over HTTP")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def _overrides(args: argparse.Namespace, fields: List[str]) -> Dict[str, Any]:
    return {name: getattr(args, name, None) for name in fields}


def run_mirror(args: argparse.Namespace) -> int:
    settings = load_settings(
        args.settings,
        _overrides(
            args,
            [
                "index_dir", "store_dir", "snapshot_path", "parse_workers", "manifest_path",
                "verify_store", "search_paths", "download_limit", "fetch_workers",
                "verify_workers", "request_timeout", "diff_path",
            ],
        ),
    )
    pipeline = MirrorPipeline(settings, progress=LoggingProgress(args.progress_every))
    report = asyncio.run(pipeline.run())
    print(format_report(report))
    return EXIT_OK if report.complete else EXIT_INCOMPLETE


def run_server(args: argparse.Namespace) -> int:
    import uvicorn

    from crates_mirror.core.dependencies import get_registry_config, set_settings

    settings = load_settings(
        args.settings,
        _overrides(args, ["index_dir", "store_dir", "snapshot_path", "parse_workers"]),
    )
    set_settings(settings)
    # Fail before binding the port if config.json is unusable.
    get_registry_config()

    from crates_mirror.main import app

    uvicorn.run(app, host=args.host, port=args.port)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        if args.command == "mirror":
            return run_mirror(args)
        return run_server(args)
    except MirrorError as e:
        logger.error(str(e))
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
