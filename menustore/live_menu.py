# menustore/live_menu.py
from __future__ import annotations

import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from .contracts import cents_to_price
from .db import _chunks, _now, _qmarks, _row_to_dict, db_connect

ITEM_BOOL_FIELDS = ("is_vegetarian", "is_vegan", "is_18_plus", "available")
GROUP_BOOL_FIELDS = ("required", "multiple_choice")
OPTION_BOOL_FIELDS = ("available",)


# ------------------------------------------------------------
# Row shaping
# ------------------------------------------------------------
def _bools(d: Dict[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
    for f in fields:
        if f in d and d[f] is not None:
            d[f] = bool(d[f])
    return d


def item_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    d = _bools(_row_to_dict(row), ITEM_BOOL_FIELDS)
    d["price"] = cents_to_price(d.get("price_cents"))
    return d


def option_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    d = _bools(_row_to_dict(row), OPTION_BOOL_FIELDS)
    d["price"] = cents_to_price(d.get("price_cents"))
    return d


def group_to_dict(row: sqlite3.Row, options: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    d = _bools(_row_to_dict(row), GROUP_BOOL_FIELDS)
    d["options"] = options or []
    return d


# ------------------------------------------------------------
# Identity resolution (external key -> live row id)
# ------------------------------------------------------------
def item_ids_for_keys(
    conn: sqlite3.Connection,
    restaurant_id: int,
    keys: Iterable[str],
    *,
    include_archived: bool = True,
) -> Dict[str, int]:
    """Map external keys to live menu_items ids, querying in chunks."""
    wanted = sorted({str(k) for k in keys if k})
    out: Dict[str, int] = {}
    for chunk in _chunks(wanted):
        qs = (
            f"SELECT id, external_key FROM menu_items "
            f"WHERE restaurant_id=? AND external_key IN ({_qmarks(chunk)})"
        )
        if not include_archived:
            qs += " AND archived_at IS NULL"
        for r in conn.execute(qs, (int(restaurant_id), *chunk)).fetchall():
            out[r["external_key"]] = int(r["id"])
    return out


# ------------------------------------------------------------
# Reads
# ------------------------------------------------------------
def list_live_categories(restaurant_id: int, *, include_archived: bool = False) -> List[Dict[str, Any]]:
    qs = "SELECT * FROM menu_categories WHERE restaurant_id=?"
    if not include_archived:
        qs += " AND archived_at IS NULL"
    qs += " ORDER BY sort_order ASC, name ASC"
    with db_connect() as conn:
        rows = conn.execute(qs, (int(restaurant_id),)).fetchall()
    return [_row_to_dict(r) for r in rows]


def list_live_items(
    restaurant_id: int,
    *,
    include_archived: bool = False,
    category_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    qs = "SELECT * FROM menu_items WHERE restaurant_id=?"
    args: List[Any] = [int(restaurant_id)]
    if not include_archived:
        qs += " AND archived_at IS NULL"
    if category_id is not None:
        qs += " AND category_id=?"
        args.append(str(category_id))
    qs += " ORDER BY sort_order ASC, id ASC"
    with db_connect() as conn:
        rows = conn.execute(qs, args).fetchall()
    return [item_to_dict(r) for r in rows]


def get_live_item(item_id: int) -> Optional[Dict[str, Any]]:
    """Fetch one live item by id. Archived rows are returned too (order history)."""
    with db_connect() as conn:
        row = conn.execute("SELECT * FROM menu_items WHERE id=?", (int(item_id),)).fetchone()
    return item_to_dict(row) if row else None


def get_live_menu(restaurant_id: int) -> Dict[str, Any]:
    """Active categories and items, the shape the storefront renders from."""
    return {
        "categories": list_live_categories(restaurant_id),
        "items": list_live_items(restaurant_id),
    }


def get_addons_for_item(item_id: int) -> List[Dict[str, Any]]:
    """Live, non-archived add-on groups (with options) linked to an item."""
    with db_connect() as conn:
        groups = conn.execute(
            """
            SELECT g.*
            FROM item_addon_links l
            JOIN addon_groups g ON g.id = l.group_id
            WHERE l.item_id = ? AND g.archived_at IS NULL
            ORDER BY g.sort_order ASC, g.name ASC
            """,
            (int(item_id),),
        ).fetchall()
        if not groups:
            return []
        gids = [g["id"] for g in groups]
        opts = conn.execute(
            f"""
            SELECT * FROM addon_options
            WHERE group_id IN ({_qmarks(gids)}) AND archived_at IS NULL
            ORDER BY sort_order ASC, name ASC
            """,
            gids,
        ).fetchall()

    by_group: Dict[str, List[Dict[str, Any]]] = {}
    for o in opts:
        by_group.setdefault(o["group_id"], []).append(option_to_dict(o))
    return [group_to_dict(g, by_group.get(g["id"], [])) for g in groups]


# ------------------------------------------------------------
# Writes
# ------------------------------------------------------------
def reorder_menu(
    restaurant_id: int,
    *,
    categories: Optional[List[Dict[str, Any]]] = None,
    items: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, int]:
    """
    Apply sort_order changes (and optional category moves) to live rows.
    Rows belonging to another restaurant are never touched.
    """
    now = _now()
    cats_updated = 0
    items_updated = 0
    with db_connect() as conn:
        cur = conn.cursor()
        for c in categories or []:
            if c.get("id") is None or c.get("sort_order") is None:
                continue
            cur.execute(
                "UPDATE menu_categories SET sort_order=?, updated_at=? WHERE id=? AND restaurant_id=?",
                (int(c["sort_order"]), now, str(c["id"]), int(restaurant_id)),
            )
            cats_updated += cur.rowcount
        for it in items or []:
            if it.get("id") is None or it.get("sort_order") is None:
                continue
            sets = ["sort_order=?", "updated_at=?"]
            args: List[Any] = [int(it["sort_order"]), now]
            if "category_id" in it:
                sets.append("category_id=?")
                args.append(None if it["category_id"] is None else str(it["category_id"]))
            args += [int(it["id"]), int(restaurant_id)]
            cur.execute(
                f"UPDATE menu_items SET {', '.join(sets)} WHERE id=? AND restaurant_id=?",
                args,
            )
            items_updated += cur.rowcount
        conn.commit()
    return {"categories": cats_updated, "items": items_updated}
