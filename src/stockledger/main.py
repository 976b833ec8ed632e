"""Command line entry point for the stock ledger."""
from __future__ import annotations

import argparse
import sys

from stockledger.application.container import build_container
from stockledger.config import load_settings
from stockledger.domain.errors import AppError, error_category
from stockledger.logging_config import setup_logging


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="stockledger", description=__doc__)
    parser.add_argument("--db", help="Path to the SQLite database (overrides STOCKLEDGER_DB_PATH).")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create or migrate the database and run the startup repair pass.")

    stock = sub.add_parser("stock", help="Print ledger-derived stock for a store.")
    stock.add_argument("store_id", type=int)
    stock.add_argument("--item", help="Only this item code.")

    sub.add_parser("guardian", help="Run the duplicate-code repair pass and print its report.")

    imp = sub.add_parser("import-opening", help="Import opening balances from an .xlsx file.")
    imp.add_argument("path")
    imp.add_argument("store_id", type=int)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = load_settings()
    setup_logging(settings.logs_dir, level=settings.log_level)
    db_path = args.db or settings.db_path

    try:
        app = build_container(db_path, settings)

        if args.command == "init":
            print(f"Database ready: {db_path}")
        elif args.command == "stock":
            if args.item:
                item = app.catalog.get_item_by_code(args.item)
                print(f"{item.code}\t{item.name}\t{app.ledger.current_stock(item.id, args.store_id)}")
            else:
                for level in app.ledger.stock_levels(args.store_id):
                    print(f"{level.item_code}\t{level.item_name}\t{level.stock}")
        elif args.command == "guardian":
            report = app.guardian.run()
            for table, n in report.removed.items():
                print(f"{table}: removed={n} backfilled={report.backfilled.get(table, 0)}")
            print(f"installed: {', '.join(report.installed) or '-'}")
            print(f"skipped: {', '.join(report.skipped) or '-'}")
            print(f"integrity: {report.integrity}")
        elif args.command == "import-opening":
            ok, skipped = app.excel.import_opening_stock(args.path, args.store_id)
            print(f"Imported {ok} rows, skipped {skipped}.")
    except AppError as e:
        print(f"{error_category(e)}: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
