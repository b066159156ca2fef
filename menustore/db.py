# menustore/db.py
from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Sequence

from dotenv import load_dotenv

# ------------------------------------------------------------
# Paths / DB
# ------------------------------------------------------------
ROOT = Path(__file__).resolve().parents[1]   # project root
load_dotenv(ROOT / ".env")

DB_PATH = Path(os.getenv("MENULINE_DB_PATH") or (ROOT / "menustore" / "menuline.db"))

# SQLite caps bound parameters per statement; stay well under the old 999 default.
SQL_CHUNK = 500


def db_connect() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {k: row[k] for k in row.keys()}


def _chunks(values: Sequence[Any], size: int = SQL_CHUNK) -> Iterator[List[Any]]:
    for i in range(0, len(values), size):
        yield list(values[i:i + size])


def _qmarks(values: Iterable[Any]) -> str:
    return ",".join("?" for _ in values)


# ------------------------------------------------------------
# Schema (idempotent; safe to call repeatedly)
# ------------------------------------------------------------
def init_schema(conn: sqlite3.Connection) -> None:
    """Create every table the draft/publish pipeline needs on ``conn``."""
    cur = conn.cursor()

    # one editable menu document per restaurant
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS menu_drafts (
          restaurant_id INTEGER PRIMARY KEY,
          payload       TEXT NOT NULL,      -- JSON {categories, items, links}
          created_at    TEXT NOT NULL,
          updated_at    TEXT NOT NULL
        )
        """
    )

    # live categories: id is the draft's temp id reused as surrogate
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS menu_categories (
          id            TEXT NOT NULL,
          restaurant_id INTEGER NOT NULL,
          name          TEXT NOT NULL,
          description   TEXT,
          sort_order    INTEGER NOT NULL DEFAULT 0,
          image_url     TEXT,
          archived_at   TEXT,
          created_at    TEXT NOT NULL,
          updated_at    TEXT NOT NULL,
          PRIMARY KEY (restaurant_id, id)
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS menu_items (
          id                 INTEGER PRIMARY KEY AUTOINCREMENT,
          restaurant_id      INTEGER NOT NULL,
          external_key       TEXT NOT NULL,
          name               TEXT NOT NULL,
          description        TEXT,
          price_cents        INTEGER NOT NULL DEFAULT 0,
          image_url          TEXT,
          is_vegetarian      INTEGER NOT NULL DEFAULT 0,
          is_vegan           INTEGER NOT NULL DEFAULT 0,
          is_18_plus         INTEGER NOT NULL DEFAULT 0,
          stock_status       TEXT,
          available          INTEGER NOT NULL DEFAULT 1,
          out_of_stock_until TEXT,
          stock_return_date  TEXT,
          category_id        TEXT,
          sort_order         INTEGER NOT NULL DEFAULT 0,
          archived_at        TEXT,
          created_at         TEXT NOT NULL,
          updated_at         TEXT NOT NULL,
          UNIQUE (restaurant_id, external_key)
        )
        """
    )

    # add-on schema, created twice: live (published) and *_drafts (draft)
    for suffix, state in (("", "published"), ("_drafts", "draft")):
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS addon_groups{suffix} (
              id                  TEXT PRIMARY KEY,
              restaurant_id       INTEGER NOT NULL,
              name                TEXT NOT NULL,
              required            INTEGER NOT NULL DEFAULT 0,
              multiple_choice     INTEGER NOT NULL DEFAULT 0,
              max_group_select    INTEGER,      -- NULL = unlimited
              max_option_quantity INTEGER,      -- NULL = unlimited
              sort_order          INTEGER NOT NULL DEFAULT 0,
              state               TEXT NOT NULL DEFAULT '{state}',
              archived_at         TEXT,
              created_at          TEXT NOT NULL,
              updated_at          TEXT NOT NULL
            )
            """
        )
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS addon_options{suffix} (
              id                 TEXT PRIMARY KEY,
              group_id           TEXT NOT NULL,
              restaurant_id      INTEGER NOT NULL,
              name               TEXT NOT NULL,
              price_cents        INTEGER NOT NULL DEFAULT 0,
              available          INTEGER NOT NULL DEFAULT 1,
              stock_status       TEXT,
              stock_return_date  TEXT,
              out_of_stock_until TEXT,
              sort_order         INTEGER NOT NULL DEFAULT 0,
              state              TEXT NOT NULL DEFAULT '{state}',
              archived_at        TEXT,
              created_at         TEXT NOT NULL,
              updated_at         TEXT NOT NULL,
              FOREIGN KEY (group_id) REFERENCES addon_groups{suffix}(id) ON DELETE CASCADE
            )
            """
        )

    # live links point at menu_items.id
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS item_addon_links (
          id            INTEGER PRIMARY KEY AUTOINCREMENT,
          restaurant_id INTEGER NOT NULL,
          item_id       INTEGER NOT NULL,
          group_id      TEXT NOT NULL,
          created_at    TEXT NOT NULL,
          UNIQUE (item_id, group_id),
          FOREIGN KEY (item_id) REFERENCES menu_items(id),
          FOREIGN KEY (group_id) REFERENCES addon_groups(id)
        )
        """
    )

    # draft links point at the item's external key; item_id is the draft-time id
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS item_addon_links_drafts (
          id                INTEGER PRIMARY KEY AUTOINCREMENT,
          restaurant_id     INTEGER NOT NULL,
          item_id           TEXT,
          item_external_key TEXT,
          group_id          TEXT NOT NULL,
          state             TEXT NOT NULL DEFAULT 'draft',
          created_at        TEXT NOT NULL
        )
        """
    )

    # helpful indexes
    cur.execute("CREATE INDEX IF NOT EXISTS idx_items_restaurant ON menu_items(restaurant_id, archived_at)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_cats_restaurant ON menu_categories(restaurant_id, archived_at)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_groups_restaurant ON addon_groups(restaurant_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_groups_drafts_restaurant ON addon_groups_drafts(restaurant_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_options_group ON addon_options(group_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_options_drafts_group ON addon_options_drafts(group_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_links_restaurant ON item_addon_links(restaurant_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_links_drafts_restaurant ON item_addon_links_drafts(restaurant_id, group_id)")

    conn.commit()


def _ensure_schema() -> None:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    with db_connect() as conn:
        init_schema(conn)


_ensure_schema()
