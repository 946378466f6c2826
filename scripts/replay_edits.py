#!/usr/bin/env python3
"""
Replay the edit save file of decoded swath files and report flag counts.

Usage:
    python scripts/replay_edits.py --swath line1.npz
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import EditorConfig
from data import EditLogError, EditStateStore, FileSwathStore, SwathLoader


def setup_logging(log_level: str = "INFO"):
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
        ]
    )


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Replay swath edit save files"
    )
    parser.add_argument("--swath", type=Path, nargs="+", required=True)
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--log-level", type=str, default="INFO")
    return parser.parse_args()


def main():
    args = parse_args()
    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    config = EditorConfig.load(args.config) if args.config and args.config.exists() else EditorConfig()

    loader = SwathLoader()
    store = FileSwathStore()
    edits = EditStateStore(config.edit_log)

    failed = False
    for path in args.swath:
        try:
            swath = store.load(loader.load(path))
            report = edits.load(swath)
        except (EditLogError, FileNotFoundError, ValueError) as e:
            logger.error(f"{path}: {e}")
            failed = True
            continue

        counts = swath.flag_counts()
        print(f"{swath.name}")
        print(f"  edits:     {report.total} ({report.applied} applied, {report.skipped} skipped, "
              f"{report.unmatched} unmatched, {report.ignored} ignored)")
        for name, n in counts.items():
            print(f"  {name:<10} {n}")

    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
