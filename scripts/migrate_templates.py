"""
Template Migration - upgrade stored templates to the canonical format

Older enrollments stored a bare JSON array, an unversioned
{"descriptor": [...]} object, or several arrays joined with "|". They are
still readable at verification time, but this tool rewrites them once so
every stored template uses the versioned format.

Usage:
    python scripts/migrate_templates.py
    python scripts/migrate_templates.py --db storage/templates.sqlite
    python scripts/migrate_templates.py --dry-run
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from faceauth.template_manager import get_template_manager
from faceauth.template_store import is_legacy


def main():
    parser = argparse.ArgumentParser(description="Upgrade legacy face templates")
    parser.add_argument("--db", default=None, help="SQLite database path (default: from config)")
    parser.add_argument("--dry-run", action="store_true", help="Only report legacy templates")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    manager = get_template_manager(args.db)
    try:
        employees = manager.list_employees()
        legacy = [
            e["employee_id"] for e in employees
            if is_legacy(manager.get_template(e["employee_id"]))
        ]

        print(f"{len(legacy)} of {len(employees)} template(s) use a legacy format")
        for employee_id in legacy:
            print(f"  - {employee_id}")

        if args.dry_run or not legacy:
            return 0

        upgraded = manager.migrate_legacy_templates()
        print(f"Upgraded {upgraded} template(s)")
        return 0 if upgraded == len(legacy) else 1
    finally:
        manager.close()


if __name__ == "__main__":
    sys.exit(main())
