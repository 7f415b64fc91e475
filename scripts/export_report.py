#!/usr/bin/env python3
"""
Street Patrol Log - Report Export
=================================
Writes one user's report for a period into the configured export_dir.

Usage:
    python scripts/export_report.py user@example.org                 # last month, CSV + HTML
    python scripts/export_report.py user@example.org previousYear
    python scripts/export_report.py user@example.org 2023 --xlsx     # also write XLSX
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.auth.models import UserRepository  # noqa: E402
from app.config import get_local_now  # noqa: E402
from app.errors import PatrolError  # noqa: E402
from app.patrols.aggregator import aggregate, report_period  # noqa: E402
from app.patrols.controller import PatrolSessionController  # noqa: E402
from app.patrols.formatter import write_report  # noqa: E402


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    args = [a for a in argv if not a.startswith("--")]
    flags = {a for a in argv if a.startswith("--")}
    if not args:
        print(__doc__)
        return 2

    formats = ["csv", "html"]
    if "--xlsx" in flags:
        formats.append("xlsx")

    try:
        session = UserRepository().find_by_email(args[0])
        if session is None:
            print(f"[PATROL] No account for {args[0]}")
            return 1

        period = report_period(args[1] if len(args) > 1 else None, get_local_now())
        patrols = PatrolSessionController().list_patrols(session)
        result = aggregate(patrols, period.date_range)
        paths = write_report(result, period.title, period.label, formats)
    except PatrolError as e:
        print(f"[PATROL] {e}")
        return 1

    print(f"[PATROL] {period.title}: {result.patrol_count} patrols ({period.label})")
    for fmt, path in paths.items():
        print(f"  {fmt:5s} {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
