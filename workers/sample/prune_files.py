#!/usr/bin/env python3
"""
Sample maintenance job.

Deletes files older than a cutoff from a directory. Driven by foreman.yaml.
"""

from __future__ import annotations

import argparse
import time
from pathlib import Path
from typing import List


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete files older than --max-age-days.")
    parser.add_argument("--directory", default="storage/exports")
    parser.add_argument("--pattern", default="*")
    parser.add_argument("--max-age-days", type=float, default=7.0)
    parser.add_argument("--dry-run", action="store_true")
    return parser.parse_args()


def find_expired(directory: Path, pattern: str, max_age_days: float) -> List[Path]:
    cutoff = time.time() - max_age_days * 86400
    return sorted(
        path for path in directory.glob(pattern) if path.is_file() and path.stat().st_mtime < cutoff
    )


def main() -> int:
    args = parse_args()
    if args.max_age_days < 0:
        print("Error: --max-age-days must be >= 0")
        return 1
    directory = Path(args.directory)
    if not directory.is_dir():
        print(f"Nothing to prune: {directory} does not exist")
        return 0

    expired = find_expired(directory, args.pattern, args.max_age_days)
    for path in expired:
        if not args.dry_run:
            path.unlink(missing_ok=True)
    action = "Would remove" if args.dry_run else "Removed"
    print(f"{action} {len(expired)} file(s) from {directory}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
