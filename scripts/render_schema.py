#!/usr/bin/env python3
"""Emit the projection DDL (agents, bounties, reviews, receipts, checkpoint state)."""

from __future__ import annotations

import argparse
from pathlib import Path

from bounty_indexer.services.schema import render_schema_sql


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL that creates the bounty-indexer projection schema.")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write the SQL to this file instead of stdout",
    )
    parser.add_argument(
        "--database",
        default=None,
        help="Prefix the script with a psql \\c <database> line",
    )
    args = parser.parse_args()

    sql = render_schema_sql()
    if args.database:
        sql = f"\\c {args.database};\n\n{sql}"

    if args.output is None:
        print(sql)
        return
    args.output.write_text(sql, encoding="utf-8")
    print(f"wrote_schema={args.output}")


if __name__ == "__main__":
    main()
