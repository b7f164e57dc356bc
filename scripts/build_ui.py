"""CLI entry point for the Mutant UI build.

Usage:
    python scripts/build_ui.py dev
    python scripts/build_ui.py prod --project-root /path/to/ui --verbose
    python scripts/build_ui.py --list
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import pprint
import sys
import traceback
from pathlib import Path
from typing import List, Optional

# Ensure scripts/ is on the path so sibling imports work
scripts_dir = Path(__file__).resolve().parent
if str(scripts_dir) not in sys.path:
    sys.path.insert(0, str(scripts_dir))

from config_loader import find_project_root, list_available_build_types
from exceptions import UsageError
from pipeline.orchestrator import run_build

logger = logging.getLogger(__name__)

USAGE = "usage: build_ui.py <build-type>"


def report_error(exc: BaseException) -> None:
    """Print the message, a structural dump, the type name and the traceback."""
    print(f"Error running build: {exc}", file=sys.stderr)
    print(pprint.pformat(getattr(exc, "__dict__", {}), depth=None), file=sys.stderr)
    print(type(exc).__name__, file=sys.stderr)
    traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the build and return the process exit code."""
    parser = argparse.ArgumentParser(
        description="Mutant UI build",
        epilog="Build types live in config/build/configs/<type>.yml.",
    )
    parser.add_argument(
        "build_type",
        nargs="?",
        help="Build type to run (e.g. 'dev', 'ci', 'prod')",
    )
    parser.add_argument(
        "--project-root",
        default=None,
        help="Project root (default: nearest ancestor with config/build/defaults.yml)",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        default=False,
        help="List available build types and exit",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=False,
        help="Enable verbose logging",
    )
    args = parser.parse_args(argv)

    # Configure logging
    verbose = args.verbose or os.environ.get("UI_BUILD_VERBOSE", "").lower() in ("true", "1", "yes")
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    project_root = Path(args.project_root) if args.project_root else find_project_root()

    if args.list:
        for name in list_available_build_types(project_root):
            print(name)
        return 0

    if not args.build_type:
        print("Build config not specified", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return 1

    try:
        asyncio.run(run_build(args.build_type, project_root))
    except UsageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return 1
    except Exception as exc:
        report_error(exc)
        return 1

    logger.info("Build '%s' complete", args.build_type)
    return 0


if __name__ == "__main__":
    sys.exit(main())
