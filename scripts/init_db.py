# scripts/init_db.py
"""
Create (or upgrade in place) the MenuLine SQLite database.

  python scripts/init_db.py            # uses MENULINE_DB_PATH / .env
  python scripts/init_db.py --db X.db  # explicit location
"""
import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> None:
    parser = argparse.ArgumentParser(description="Initialize the MenuLine database schema.")
    parser.add_argument("--db", help="database file (overrides MENULINE_DB_PATH)")
    args = parser.parse_args()

    if args.db:
        os.environ["MENULINE_DB_PATH"] = str(Path(args.db).resolve())

    # importing the storage layer bootstraps the schema
    from menustore import db

    with db.db_connect() as conn:
        db.init_schema(conn)
        tables = [
            r["name"]
            for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ).fetchall()
        ]

    print("[MenuLine] DB ready.")
    print(f"[MenuLine] Location: {db.DB_PATH}")
    print(f"[MenuLine] Tables:   {', '.join(tables)}")


if __name__ == "__main__":
    main()
