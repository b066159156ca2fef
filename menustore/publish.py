# menustore/publish.py
"""
Promote a restaurant's draft document to the live tables.

Stages run in a fixed order and each one is idempotent on its own, so a
publish that dies half-way is repaired by simply publishing again:

  load_draft -> upsert_categories -> upsert_items (+ archive_stale)
  -> map_items -> backfill_links -> promote_addons

Only promote_addons is atomic (one SAVEPOINT on one connection).  There is no
compensating rollback for the earlier stages.
"""
from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from .addon_drafts import GROUP_COLUMNS, OPTION_COLUMNS, seed_addon_drafts
from .contracts import DraftDocument, price_to_cents
from .db import _chunks, _now, _qmarks, db_connect
from .drafts import ensure_external_keys, find_draft_item, load_draft, write_draft_payload
from .live_menu import item_ids_for_keys

log = logging.getLogger(__name__)

STAGES = (
    "load_draft",
    "upsert_categories",
    "upsert_items",
    "map_items",
    "backfill_links",
    "promote_addons",
)

CATEGORY_COLUMNS = ("name", "description", "sort_order", "image_url")
ITEM_COLUMNS = (
    "name", "description", "price_cents", "image_url",
    "is_vegetarian", "is_vegan", "is_18_plus",
    "stock_status", "available", "out_of_stock_until", "stock_return_date",
    "category_id", "sort_order",
)


class PublishError(RuntimeError):
    """A publish stage failed. ``stage`` names it; ``error`` is a short code or message."""

    def __init__(self, stage: str, error: str):
        super().__init__(f"{stage}: {error}")
        self.stage = stage
        self.error = error


@contextmanager
def _stage(name: str) -> Iterator[None]:
    try:
        yield
    except PublishError:
        raise
    except (sqlite3.Error, ValueError, ArithmeticError) as e:
        log.error("Publish stage %s failed: %s", name, e)
        raise PublishError(name, str(e)) from e


def _empty_receipt(restaurant_id: int) -> Dict[str, Any]:
    return {
        "ok": True,
        "restaurant_id": int(restaurant_id),
        "published_at": None,
        "inserted": {"categories": 0, "items": 0, "groups": 0, "options": 0, "links": 0},
        "updated": {"categories": 0, "items": 0, "groups": 0, "options": 0},
        "archived": {"categories": 0, "items": 0, "groups": 0, "options": 0},
        "removed": {"links": 0},
        "items_mapped": 0,
        "links_backfilled": 0,
        "links_unresolved": 0,
    }


def _flag(v: Any, default: bool = False) -> int:
    if v is None:
        return int(default)
    if isinstance(v, str):
        return int(v.strip().lower() in ("1", "true", "yes", "on"))
    return int(bool(v))


def _unchanged(row: Optional[sqlite3.Row], values: Dict[str, Any]) -> bool:
    if row is None or row["archived_at"] is not None:
        return False
    return all(row[k] == v for k, v in values.items())


def _set_clause(columns) -> str:
    return ", ".join(f"{c}=?" for c in columns)


# ------------------------------------------------------------
# Stage 2: categories
# ------------------------------------------------------------
def _upsert_categories(restaurant_id: int, doc: DraftDocument, receipt: Dict[str, Any]) -> Tuple[Dict[str, str], bool]:
    """Returns (temp-or-existing id -> final id, whether the draft gained ids)."""
    rid = int(restaurant_id)
    now = _now()
    cat_map: Dict[str, str] = {}
    doc_changed = False

    with db_connect() as conn:
        existing = {
            r["id"]: r
            for r in conn.execute("SELECT * FROM menu_categories WHERE restaurant_id=?", (rid,)).fetchall()
        }
        for idx, cat in enumerate(doc.get("categories") or []):
            raw = cat.get("id")
            if raw is None or not str(raw).strip():
                cid = str(uuid.uuid4())
                cat["id"] = cid
                doc_changed = True
            else:
                cid = str(raw)
            if cid in cat_map:
                log.warning("Duplicate category id %s in draft for restaurant %s", cid, rid)
                continue
            cat_map[cid] = cid

            values = {
                "name": str(cat.get("name") or "").strip(),
                "description": cat.get("description"),
                "sort_order": int(cat["sort_order"]) if cat.get("sort_order") is not None else idx,
                "image_url": cat.get("image_url"),
            }
            row = existing.get(cid)
            if _unchanged(row, values):
                continue
            if row is not None:
                conn.execute(
                    f"""
                    UPDATE menu_categories SET {_set_clause(CATEGORY_COLUMNS)}, archived_at=NULL, updated_at=?
                    WHERE restaurant_id=? AND id=?
                    """,
                    (*[values[c] for c in CATEGORY_COLUMNS], now, rid, cid),
                )
                receipt["updated"]["categories"] += 1
            else:
                conn.execute(
                    f"""
                    INSERT INTO menu_categories
                      (id, restaurant_id, {', '.join(CATEGORY_COLUMNS)}, archived_at, created_at, updated_at)
                    VALUES (?, ?, {_qmarks(CATEGORY_COLUMNS)}, NULL, ?, ?)
                    ON CONFLICT(restaurant_id, id) DO UPDATE SET
                      name=excluded.name, description=excluded.description,
                      sort_order=excluded.sort_order, image_url=excluded.image_url,
                      archived_at=NULL, updated_at=excluded.updated_at
                    """,
                    (cid, rid, *[values[c] for c in CATEGORY_COLUMNS], now, now),
                )
                receipt["inserted"]["categories"] += 1

        # archive_stale: live categories the draft no longer has
        stale = [cid for cid, r in existing.items() if r["archived_at"] is None and cid not in cat_map]
        for chunk in _chunks(stale):
            conn.execute(
                f"""
                UPDATE menu_categories SET archived_at=?, updated_at=?
                WHERE restaurant_id=? AND id IN ({_qmarks(chunk)})
                """,
                (now, now, rid, *chunk),
            )
        receipt["archived"]["categories"] += len(stale)
        conn.commit()

    return cat_map, doc_changed


# ------------------------------------------------------------
# Stage 3: items
# ------------------------------------------------------------
def _item_values(item: Dict[str, Any], idx: int, cat_map: Dict[str, str]) -> Dict[str, Any]:
    cat = item.get("category_id")
    category_id = cat_map.get(str(cat)) if cat is not None else None
    if cat is not None and category_id is None:
        log.warning("Item %r references unknown category %r; publishing uncategorized", item.get("name"), cat)
    return {
        "name": str(item.get("name") or "").strip(),
        "description": item.get("description"),
        "price_cents": price_to_cents(item.get("price")) or 0,
        "image_url": item.get("image_url"),
        "is_vegetarian": _flag(item.get("is_vegetarian")),
        "is_vegan": _flag(item.get("is_vegan")),
        "is_18_plus": _flag(item.get("is_18_plus")),
        "stock_status": item.get("stock_status"),
        "available": _flag(item.get("available"), default=True),
        "out_of_stock_until": item.get("out_of_stock_until"),
        "stock_return_date": item.get("stock_return_date"),
        "category_id": category_id,
        "sort_order": int(item["sort_order"]) if item.get("sort_order") is not None else idx,
    }


def _upsert_items(
    restaurant_id: int,
    doc: DraftDocument,
    cat_map: Dict[str, str],
    receipt: Dict[str, Any],
) -> Tuple[Dict[str, int], List[str], bool]:
    """Returns (external key -> live id for rows we wrote or matched, draft keys, draft gained keys)."""
    rid = int(restaurant_id)
    now = _now()
    generated = ensure_external_keys(doc)
    key_map: Dict[str, int] = {}
    keys: List[str] = []
    seen: Set[str] = set()

    with db_connect() as conn:
        existing = {
            r["external_key"]: r
            for r in conn.execute("SELECT * FROM menu_items WHERE restaurant_id=?", (rid,)).fetchall()
        }
        for idx, item in enumerate(doc.get("items") or []):
            key = item["external_key"]
            if key in seen:
                log.warning("Duplicate external key %s in draft for restaurant %s", key, rid)
                continue
            seen.add(key)
            keys.append(key)

            values = _item_values(item, idx, cat_map)
            row = existing.get(key)
            if _unchanged(row, values):
                key_map[key] = int(row["id"])
                continue
            if row is not None:
                conn.execute(
                    f"""
                    UPDATE menu_items SET {_set_clause(ITEM_COLUMNS)}, archived_at=NULL, updated_at=?
                    WHERE id=?
                    """,
                    (*[values[c] for c in ITEM_COLUMNS], now, row["id"]),
                )
                key_map[key] = int(row["id"])
                receipt["updated"]["items"] += 1
            else:
                sets = ", ".join(f"{c}=excluded.{c}" for c in ITEM_COLUMNS)
                cur = conn.execute(
                    f"""
                    INSERT INTO menu_items
                      (restaurant_id, external_key, {', '.join(ITEM_COLUMNS)}, archived_at, created_at, updated_at)
                    VALUES (?, ?, {_qmarks(ITEM_COLUMNS)}, NULL, ?, ?)
                    ON CONFLICT(restaurant_id, external_key) DO UPDATE SET
                      {sets}, archived_at=NULL, updated_at=excluded.updated_at
                    """,
                    (rid, key, *[values[c] for c in ITEM_COLUMNS], now, now),
                )
                if cur.lastrowid:
                    key_map[key] = int(cur.lastrowid)
                receipt["inserted"]["items"] += 1

        # archive_stale: live items the draft no longer has
        stale = [r["id"] for k, r in existing.items() if r["archived_at"] is None and k not in seen]
        for chunk in _chunks(stale):
            conn.execute(
                f"UPDATE menu_items SET archived_at=?, updated_at=? WHERE id IN ({_qmarks(chunk)})",
                (now, now, *chunk),
            )
        receipt["archived"]["items"] += len(stale)
        conn.commit()

    return key_map, keys, generated > 0


# ------------------------------------------------------------
# Stage 4: key -> id map
# ------------------------------------------------------------
def _map_items(restaurant_id: int, keys: List[str], key_map: Dict[str, int]) -> Dict[str, int]:
    if all(k in key_map for k in keys):
        return dict(key_map)
    with db_connect() as conn:
        resolved = item_ids_for_keys(conn, restaurant_id, keys)
    return {k: resolved[k] for k in keys if k in resolved}


# ------------------------------------------------------------
# Stage 5: backfill draft link keys
# ------------------------------------------------------------
def _backfill_links(restaurant_id: int, doc: DraftDocument) -> int:
    rid = int(restaurant_id)
    patched = 0
    with db_connect() as conn:
        rows = conn.execute(
            """
            SELECT id, item_id FROM item_addon_links_drafts
            WHERE restaurant_id=? AND item_external_key IS NULL AND item_id IS NOT NULL
            """,
            (rid,),
        ).fetchall()
        for r in rows:
            key = None
            item_id = str(r["item_id"])
            if item_id.isdigit():
                live = conn.execute(
                    "SELECT external_key FROM menu_items WHERE id=? AND restaurant_id=?",
                    (int(item_id), rid),
                ).fetchone()
                if live:
                    key = live["external_key"]
            if not key:
                draft_item = find_draft_item(doc, item_id)
                key = (draft_item or {}).get("external_key")
            if not key:
                continue
            conn.execute(
                "UPDATE item_addon_links_drafts SET item_external_key=? WHERE id=?",
                (key, r["id"]),
            )
            patched += 1
        conn.commit()
    return patched


# ------------------------------------------------------------
# Stage 6: add-on promotion (atomic)
# ------------------------------------------------------------
def _promote_table(
    conn: sqlite3.Connection,
    restaurant_id: int,
    kind: str,
    columns,
    extra: Tuple[str, ...],
    receipt: Dict[str, Any],
    parents: Optional[Set[str]] = None,
) -> Set[str]:
    """
    Copy draft rows of ``kind`` ('groups' | 'options') into the live table.
    Archived draft rows (or options whose group is not active) archive their
    live twin.  Returns ids still active.
    """
    draft_table = f"addon_{kind}_drafts"
    live_table = f"addon_{kind}"
    now = _now()
    cols = tuple(extra) + tuple(columns)
    active: Set[str] = set()

    drafts = conn.execute(
        f"SELECT * FROM {draft_table} WHERE restaurant_id=? ORDER BY created_at ASC",
        (int(restaurant_id),),
    ).fetchall()
    live = {
        r["id"]: r
        for r in conn.execute(f"SELECT * FROM {live_table} WHERE restaurant_id=?", (int(restaurant_id),)).fetchall()
    }

    for d in drafts:
        row = live.get(d["id"])
        orphaned = parents is not None and d["group_id"] not in parents
        if d["archived_at"] is not None or orphaned:
            if row is not None and row["archived_at"] is None:
                conn.execute(
                    f"UPDATE {live_table} SET archived_at=?, updated_at=? WHERE id=?",
                    (now, now, d["id"]),
                )
                receipt["archived"][kind] += 1
            continue

        active.add(d["id"])
        values = {c: d[c] for c in cols}
        if _unchanged(row, values):
            continue
        if row is not None:
            conn.execute(
                f"""
                UPDATE {live_table} SET {_set_clause(cols)}, state='published', archived_at=NULL, updated_at=?
                WHERE id=?
                """,
                (*[values[c] for c in cols], now, d["id"]),
            )
            receipt["updated"][kind] += 1
        else:
            conn.execute(
                f"""
                INSERT INTO {live_table}
                  (id, restaurant_id, {', '.join(cols)}, state, archived_at, created_at, updated_at)
                VALUES (?, ?, {_qmarks(cols)}, 'published', NULL, ?, ?)
                """,
                (d["id"], int(restaurant_id), *[values[c] for c in cols], now, now),
            )
            receipt["inserted"][kind] += 1
    return active


def _reconcile_links(
    conn: sqlite3.Connection,
    restaurant_id: int,
    key_map: Dict[str, int],
    active_groups: Set[str],
    receipt: Dict[str, Any],
) -> None:
    rid = int(restaurant_id)
    now = _now()
    desired: Set[Tuple[int, str]] = set()
    unresolved: Set[Tuple[Optional[str], str]] = set()

    for r in conn.execute(
        "SELECT item_external_key, group_id FROM item_addon_links_drafts WHERE restaurant_id=? AND state='draft'",
        (rid,),
    ).fetchall():
        key, gid = r["item_external_key"], r["group_id"]
        if gid not in active_groups:
            continue
        if not key or key not in key_map:
            unresolved.add((key, gid))
            continue
        desired.add((key_map[key], gid))

    current = {
        (int(r["item_id"]), r["group_id"]): r["id"]
        for r in conn.execute(
            "SELECT id, item_id, group_id FROM item_addon_links WHERE restaurant_id=?", (rid,)
        ).fetchall()
    }

    to_insert = sorted(desired - set(current))
    conn.executemany(
        "INSERT INTO item_addon_links (restaurant_id, item_id, group_id, created_at) VALUES (?, ?, ?, ?)",
        [(rid, item_id, gid, now) for item_id, gid in to_insert],
    )
    to_remove = [current[pair] for pair in current if pair not in desired]
    for chunk in _chunks(to_remove):
        conn.execute(f"DELETE FROM item_addon_links WHERE id IN ({_qmarks(chunk)})", chunk)

    receipt["inserted"]["links"] += len(to_insert)
    receipt["removed"]["links"] += len(to_remove)
    receipt["links_unresolved"] = len(unresolved)
    if unresolved:
        log.warning(
            "Restaurant %s: %d draft add-on links wait for their item to be published",
            rid, len(unresolved),
        )


def _promote_addons(restaurant_id: int, key_map: Dict[str, int], receipt: Dict[str, Any]) -> None:
    # first publish after live-only edits: make sure the draft schema mirrors live
    seed_addon_drafts(restaurant_id)

    with db_connect() as conn:
        conn.commit()
        conn.execute("SAVEPOINT promote_addons")
        try:
            active_groups = _promote_table(conn, restaurant_id, "groups", GROUP_COLUMNS, (), receipt)
            _promote_table(
                conn, restaurant_id, "options", OPTION_COLUMNS, ("group_id",), receipt,
                parents=active_groups,
            )
            _reconcile_links(conn, restaurant_id, key_map, active_groups, receipt)
        except sqlite3.Error:
            conn.execute("ROLLBACK TO SAVEPOINT promote_addons")
            conn.execute("RELEASE SAVEPOINT promote_addons")
            raise
        conn.execute("RELEASE SAVEPOINT promote_addons")
        conn.commit()


# ------------------------------------------------------------
# Public API
# ------------------------------------------------------------
def publish_menu(restaurant_id: int) -> Dict[str, Any]:
    """
    Publish the restaurant's draft. Returns the receipt dict.
    Raises PublishError(stage, error); a missing draft is ("load_draft", "NO_DRAFT").
    """
    rid = int(restaurant_id)
    receipt = _empty_receipt(rid)

    with _stage("load_draft"):
        draft = load_draft(rid)
    if draft is None:
        raise PublishError("load_draft", "NO_DRAFT")
    doc = draft["draft"]

    with _stage("upsert_categories"):
        cat_map, cats_changed = _upsert_categories(rid, doc, receipt)

    with _stage("upsert_items"):
        key_map, keys, keys_changed = _upsert_items(rid, doc, cat_map, receipt)
        if cats_changed or keys_changed:
            write_draft_payload(rid, doc)

    with _stage("map_items"):
        key_map = _map_items(rid, keys, key_map)
        receipt["items_mapped"] = len(key_map)

    with _stage("backfill_links"):
        receipt["links_backfilled"] = _backfill_links(rid, doc)

    with _stage("promote_addons"):
        _promote_addons(rid, key_map, receipt)

    receipt["published_at"] = _now()
    log.info(
        "Published restaurant %s: inserted=%s updated=%s archived=%s unresolved_links=%d",
        rid, receipt["inserted"], receipt["updated"], receipt["archived"], receipt["links_unresolved"],
    )
    return receipt
