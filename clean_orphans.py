#!/usr/bin/env python3
"""
Remove uploaded institution icons that no institution references.

Usage:
    python clean_orphans.py            # list orphans, ask before deleting
    python clean_orphans.py --dry-run  # list only
    python clean_orphans.py --yes      # delete without asking
"""

import argparse
import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from cycle_ledger.config import get_config
from cycle_ledger.logging_config import setup_logging
from cycle_ledger.system import LedgerSystem


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Delete unreferenced institution icon files")
    parser.add_argument("--dry-run", action="store_true", help="only list orphan files")
    parser.add_argument("--yes", "-y", action="store_true", help="delete without confirmation")
    args = parser.parse_args(argv)

    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    system = LedgerSystem(config=config)

    try:
        manager = system.institution_manager
        orphans = manager.find_orphan_icons()
        if not orphans:
            print(f"No orphan icons in {manager.upload_dir}")
            return 0

        for path in orphans:
            print(path)
        print(f"{len(orphans)} orphan file(s) found")

        if args.dry_run:
            return 0
        if not args.yes:
            answer = input("Delete these files? [y/N] ").strip().lower()
            if answer not in ("y", "yes"):
                print("Aborted")
                return 1

        removed = manager.clean_orphan_icons()
        print(f"Removed {len(removed)} file(s)")
        return 0
    finally:
        system.close()


if __name__ == "__main__":
    sys.exit(main())
