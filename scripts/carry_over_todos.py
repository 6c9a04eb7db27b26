#!/usr/bin/env python3
from __future__ import annotations

import argparse
from datetime import date

from org_shared import resolve_organization
from services.todo_calendar import carried_over_ids, carry_over_incomplete


def main() -> int:
    parser = argparse.ArgumentParser(description="Move yesterday's incomplete todos to the end of today")
    parser.add_argument("--org", required=True, help="Organization slug")
    parser.add_argument("--today", help="Override today's date (YYYY-MM-DD)")
    args = parser.parse_args()

    org = resolve_organization(args.org)
    if not org:
        print(f"Unknown organization '{args.org}'")
        return 1
    today = date.fromisoformat(args.today) if args.today else date.today()
    outcome = carry_over_incomplete(org["id"], today)
    if not outcome.reassignment.writes:
        print("No incomplete todos from yesterday to move.")
        return 0
    carried = carried_over_ids(outcome, today)
    failed = outcome.persisted.failed if outcome.persisted else []
    print(f"Carried over {len(carried)} todo(s) to {today.isoformat()}")
    if failed:
        print(f"{len(failed)} write(s) failed: {', '.join(record.id for record in failed)}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
