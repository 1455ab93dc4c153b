#!/usr/bin/env python3
"""Seed the baseline playbook.

Inserts the baseline bullets that are missing; existing bullets and their
counters are left untouched.

Usage:
    python scripts/seed_playbook.py --db playbook.db
    python scripts/seed_playbook.py --db playbook.db --list
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

load_dotenv(override=True)


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed the baseline playbook")
    parser.add_argument(
        "--db",
        type=str,
        default="playbook.db",
        help="Database path (default: playbook.db)",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List baseline bullets in the database after seeding",
    )
    args = parser.parse_args()

    from src.db.repo import Repository
    from src.training.baseline import baseline_heuristics

    bullets = baseline_heuristics()
    with Repository(args.db) as repo:
        inserted = repo.seed_baseline_heuristics(bullets)
        print(f"Seeded {inserted} of {len(bullets)} baseline bullets into {args.db}")

        if args.list:
            for h in repo.list_heuristics():
                if h.is_baseline:
                    print(f"  {h.bullet_id:<12} [{h.section}] ({h.risk_level}) {h.content}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
