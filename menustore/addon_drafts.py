# menustore/addon_drafts.py
"""
Draft-side add-on state.

Add-on groups/options/links live twice: the *_drafts tables the operator edits
and the live tables the storefront reads.  Draft links are keyed by the item's
**external key** (never the live row id), so a group can be attached to an item
that has not been published yet.  The publish engine resolves key -> id later.
"""
from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .contracts import MAX_PRICE_CENTS, price_to_cents
from .db import _chunks, _now, _qmarks, db_connect
from .live_menu import group_to_dict, item_ids_for_keys, option_to_dict

log = logging.getLogger(__name__)

GROUP_COLUMNS = (
    "name", "required", "multiple_choice", "max_group_select",
    "max_option_quantity", "sort_order",
)
OPTION_COLUMNS = (
    "name", "price_cents", "available", "stock_status",
    "stock_return_date", "out_of_stock_until", "sort_order",
)

LinkPair = Tuple[str, str, Optional[str]]   # (item_external_key, group_id, draft_item_id)


class AddonDraftError(ValueError):
    """Bad draft add-on group/option payload."""


class AssignmentError(AddonDraftError):
    """Group assignment referenced an unknown group or item."""


# ------------------------------------------------------------
# Link writes
# ------------------------------------------------------------
def replace_item_links(conn: sqlite3.Connection, restaurant_id: int, pairs: Iterable[LinkPair]) -> int:
    """
    Full replace of a restaurant's draft links (delete-all, then insert).
    Runs on the caller's connection; the caller commits.
    """
    now = _now()
    rid = int(restaurant_id)
    conn.execute("DELETE FROM item_addon_links_drafts WHERE restaurant_id=?", (rid,))
    seen = set()
    rows = []
    for key, gid, item_id in pairs:
        if (key, gid) in seen:
            continue
        seen.add((key, gid))
        rows.append((rid, item_id, key, str(gid), now))
    conn.executemany(
        """
        INSERT INTO item_addon_links_drafts
          (restaurant_id, item_id, item_external_key, group_id, state, created_at)
        VALUES (?, ?, ?, ?, 'draft', ?)
        """,
        rows,
    )
    return len(rows)


# ------------------------------------------------------------
# Seeding (live -> draft, once)
# ------------------------------------------------------------
def _has_draft_groups(conn: sqlite3.Connection, restaurant_id: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM addon_groups_drafts WHERE restaurant_id=? LIMIT 1",
        (int(restaurant_id),),
    ).fetchone()
    return row is not None


def seed_addon_drafts(restaurant_id: int) -> Dict[str, Any]:
    """
    Clone live, non-archived add-on data into the draft schema when the
    restaurant has no draft groups yet.  Safe to call on every load.
    """
    rid = int(restaurant_id)
    result = {"seeded": False, "groups": 0, "options": 0, "links": 0}
    with db_connect() as conn:
        if _has_draft_groups(conn, rid):
            return result

        groups = conn.execute(
            "SELECT * FROM addon_groups WHERE restaurant_id=? AND archived_at IS NULL",
            (rid,),
        ).fetchall()
        if not groups:
            return result

        now = _now()
        cols = ", ".join(GROUP_COLUMNS)
        for g in groups:
            conn.execute(
                f"""
                INSERT INTO addon_groups_drafts
                  (id, restaurant_id, {cols}, state, created_at, updated_at)
                VALUES (?, ?, {_qmarks(GROUP_COLUMNS)}, 'draft', ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (g["id"], rid, *[g[c] for c in GROUP_COLUMNS], now, now),
            )
        result["groups"] = len(groups)

        gids = [g["id"] for g in groups]
        options = conn.execute(
            f"""
            SELECT * FROM addon_options
            WHERE group_id IN ({_qmarks(gids)}) AND archived_at IS NULL
            """,
            gids,
        ).fetchall()
        ocols = ", ".join(OPTION_COLUMNS)
        for o in options:
            conn.execute(
                f"""
                INSERT INTO addon_options_drafts
                  (id, group_id, restaurant_id, {ocols}, state, created_at, updated_at)
                VALUES (?, ?, ?, {_qmarks(OPTION_COLUMNS)}, 'draft', ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (o["id"], o["group_id"], rid, *[o[c] for c in OPTION_COLUMNS], now, now),
            )
        result["options"] = len(options)

        links = conn.execute(
            """
            SELECT l.item_id, l.group_id, i.external_key
            FROM item_addon_links l
            JOIN menu_items i   ON i.id = l.item_id
            JOIN addon_groups g ON g.id = l.group_id
            WHERE l.restaurant_id = ?
              AND i.archived_at IS NULL
              AND g.archived_at IS NULL
            """,
            (rid,),
        ).fetchall()

        # links the draft document already wrote for the same (key, group) win
        existing = {
            (r["item_external_key"], r["group_id"])
            for r in conn.execute(
                "SELECT item_external_key, group_id FROM item_addon_links_drafts WHERE restaurant_id=?",
                (rid,),
            ).fetchall()
        }
        for l in links:
            if (l["external_key"], l["group_id"]) in existing:
                continue
            conn.execute(
                """
                INSERT INTO item_addon_links_drafts
                  (restaurant_id, item_id, item_external_key, group_id, state, created_at)
                VALUES (?, ?, ?, ?, 'draft', ?)
                """,
                (rid, str(l["item_id"]), l["external_key"], l["group_id"], now),
            )
            result["links"] += 1

        conn.commit()

    result["seeded"] = True
    log.info(
        "Seeded add-on drafts for restaurant %s: %d groups, %d options, %d links",
        rid, result["groups"], result["options"], result["links"],
    )
    return result


# ------------------------------------------------------------
# Reads
# ------------------------------------------------------------
def _active_draft_groups(conn: sqlite3.Connection, restaurant_id: int) -> List[sqlite3.Row]:
    return conn.execute(
        """
        SELECT * FROM addon_groups_drafts
        WHERE restaurant_id=? AND archived_at IS NULL AND state='draft'
        ORDER BY sort_order ASC, name ASC
        """,
        (int(restaurant_id),),
    ).fetchall()


def _options_by_group(conn: sqlite3.Connection, group_ids: Sequence[str]) -> Dict[str, List[Dict[str, Any]]]:
    out: Dict[str, List[Dict[str, Any]]] = {}
    if not group_ids:
        return out
    rows = conn.execute(
        f"""
        SELECT * FROM addon_options_drafts
        WHERE group_id IN ({_qmarks(group_ids)}) AND archived_at IS NULL AND state='draft'
        ORDER BY sort_order ASC, name ASC
        """,
        list(group_ids),
    ).fetchall()
    for r in rows:
        out.setdefault(r["group_id"], []).append(option_to_dict(r))
    return out


def load_addon_drafts(restaurant_id: int) -> Dict[str, Any]:
    """
    Draft add-on groups (with options) plus the draft links that resolve to a
    live item id.  Links whose key is not live yet stay stored; they are only
    left out of this view.
    """
    seed = seed_addon_drafts(restaurant_id)
    rid = int(restaurant_id)
    with db_connect() as conn:
        groups = _active_draft_groups(conn, rid)
        gids = [g["id"] for g in groups]
        opts = _options_by_group(conn, gids)
        links = conn.execute(
            """
            SELECT item_id, item_external_key, group_id
            FROM item_addon_links_drafts
            WHERE restaurant_id=? AND state='draft'
            ORDER BY id ASC
            """,
            (rid,),
        ).fetchall()
        key_map = item_ids_for_keys(
            conn, rid, [l["item_external_key"] for l in links], include_archived=False
        )

    active = set(gids)
    addon_links = []
    unresolved = 0
    for l in links:
        key = l["item_external_key"]
        if l["group_id"] not in active:
            continue
        if not key or key not in key_map:
            unresolved += 1
            continue
        addon_links.append({
            "item_id": key_map[key],
            "item_external_key": key,
            "group_id": l["group_id"],
        })

    return {
        "addonGroups": [group_to_dict(g, opts.get(g["id"], [])) for g in groups],
        "addonLinks": addon_links,
        "stats": {
            "seeded": seed["seeded"],
            "groups": len(groups),
            "options": sum(len(v) for v in opts.values()),
            "links": len(addon_links),
            "links_unresolved": unresolved,
        },
    }


# ------------------------------------------------------------
# Group assignment
# ------------------------------------------------------------
def _unique_items(items: Any) -> List[Dict[str, Any]]:
    if not isinstance(items, list):
        raise AssignmentError("items must be a list")
    by_id: Dict[str, Dict[str, Any]] = {}
    for it in items:
        if not isinstance(it, dict) or it.get("id") is None:
            raise AssignmentError("each item needs an id")
        by_id[str(it["id"])] = it
    return list(by_id.values())


def assign_group_to_items(restaurant_id: int, group_id: Any, items: Any) -> Dict[str, Any]:
    """
    Make ``items`` the exact membership of add-on group ``group_id`` in the draft.

    Each item gets an external key (its own, the live row's, the draft item's,
    or a freshly generated one written into the draft document).  The group's
    draft links are replaced and the draft items' ``addons`` lists follow.
    Returns {"external_key_map": {item_id: external_key}}.
    """
    from .drafts import _upsert_payload, find_draft_item, get_draft, new_external_key

    if group_id is None or not str(group_id).strip():
        raise AssignmentError("group id is required")
    gid = str(group_id)
    rid = int(restaurant_id)
    wanted = _unique_items(items)

    seed_addon_drafts(rid)
    doc = get_draft(rid)["draft"]
    doc_changed = False
    key_map: Dict[str, str] = {}

    with db_connect() as conn:
        grp = conn.execute(
            "SELECT restaurant_id FROM addon_groups_drafts WHERE id=? AND archived_at IS NULL",
            (gid,),
        ).fetchone()
        if not grp or int(grp["restaurant_id"]) != rid:
            raise AssignmentError(f"Unknown add-on group: {gid}")

        for it in wanted:
            iid = str(it["id"])
            draft_item = find_draft_item(doc, iid)
            key = it.get("external_key") or (draft_item or {}).get("external_key")

            if not key and iid.isdigit():
                live = conn.execute(
                    "SELECT restaurant_id, external_key FROM menu_items WHERE id=?",
                    (int(iid),),
                ).fetchone()
                if live:
                    if int(live["restaurant_id"]) != rid:
                        raise AssignmentError(f"Item {iid} does not belong to restaurant {rid}")
                    key = live["external_key"]

            if not key:
                if draft_item is None:
                    raise AssignmentError(f"Unknown item: {iid}")
                key = new_external_key()

            if draft_item is not None and draft_item.get("external_key") != key:
                if draft_item.get("external_key"):
                    raise AssignmentError(f"Item {iid} already has a different external key")
                draft_item["external_key"] = key
                doc_changed = True
            key_map[iid] = str(key)

        # keep each draft item's embedded addons list in step with the new membership
        member_keys = set(key_map.values())
        for it in doc.get("items") or []:
            addons = [str(g) for g in (it.get("addons") or [])]
            member = it.get("external_key") in member_keys
            if member and gid not in addons:
                it["addons"] = addons + [gid]
                doc_changed = True
            elif not member and gid in addons:
                it["addons"] = [g for g in addons if g != gid]
                doc_changed = True

        now = _now()
        conn.execute(
            "DELETE FROM item_addon_links_drafts WHERE restaurant_id=? AND group_id=?",
            (rid, gid),
        )
        conn.executemany(
            """
            INSERT INTO item_addon_links_drafts
              (restaurant_id, item_id, item_external_key, group_id, state, created_at)
            VALUES (?, ?, ?, ?, 'draft', ?)
            """,
            [(rid, iid, key, gid, now) for iid, key in key_map.items()],
        )
        if doc_changed:
            _upsert_payload(conn, rid, doc)
        conn.commit()

    log.info("Assigned add-on group %s to %d items (restaurant %s)", gid, len(key_map), rid)
    return {"external_key_map": key_map}


# ------------------------------------------------------------
# Draft group editing
# ------------------------------------------------------------
def _flag(v: Any, default: bool = False) -> int:
    if v is None:
        return int(default)
    if isinstance(v, str):
        return int(v.strip().lower() in ("1", "true", "yes", "on"))
    return int(bool(v))


def _cap(v: Any, field: str) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        n = int(v)
    except (TypeError, ValueError, OverflowError):
        raise AddonDraftError(f"{field} must be an integer or null")
    if n < 0:
        raise AddonDraftError(f"{field} must not be negative")
    return n


def _sort_order(v: Any, field: str = "sort_order") -> int:
    if v is None or v == "":
        return 0
    try:
        return int(v)
    except (TypeError, ValueError, OverflowError):
        raise AddonDraftError(f"{field} must be an integer")


def _option_values(opt: Dict[str, Any]) -> Tuple[Any, ...]:
    name = str(opt.get("name") or "").strip()
    if not name:
        raise AddonDraftError("option name is required")
    if opt.get("price_cents") is not None:
        try:
            cents = int(opt["price_cents"])
        except (TypeError, ValueError, OverflowError):
            raise AddonDraftError(f"option '{name}' has an invalid price")
        if abs(cents) > MAX_PRICE_CENTS:
            raise AddonDraftError(f"option '{name}' has an invalid price")
    else:
        try:
            cents = price_to_cents(opt.get("price")) or 0
        except ValueError:
            raise AddonDraftError(f"option '{name}' has an invalid price")
    return (
        name,
        cents,
        _flag(opt.get("available"), default=True),
        opt.get("stock_status"),
        opt.get("stock_return_date"),
        opt.get("out_of_stock_until"),
        _sort_order(opt.get("sort_order"), f"option '{name}' sort_order"),
    )


def _foreign_ids(conn: sqlite3.Connection, table: str, ids: Sequence[str], restaurant_id: int) -> List[str]:
    """Ids from ``ids`` already present in ``table`` under a different restaurant."""
    out: List[str] = []
    for chunk in _chunks(sorted(set(ids))):
        rows = conn.execute(
            f"SELECT id FROM {table} WHERE id IN ({_qmarks(chunk)}) AND restaurant_id != ? ORDER BY id",
            (*chunk, int(restaurant_id)),
        ).fetchall()
        out.extend(r["id"] for r in rows)
    return out


def save_draft_group(restaurant_id: int, group: Any) -> Dict[str, Any]:
    """Upsert one draft group and its options; options omitted from ``group`` are archived."""
    if not isinstance(group, dict):
        raise AddonDraftError("group must be an object")
    name = str(group.get("name") or "").strip()
    if not name:
        raise AddonDraftError("group name is required")
    options = group.get("options") or []
    if not isinstance(options, list) or not all(isinstance(o, dict) for o in options):
        raise AddonDraftError("options must be a list of objects")

    rid = int(restaurant_id)
    gid = str(group.get("id") or uuid.uuid4())
    values = (
        name,
        _flag(group.get("required")),
        _flag(group.get("multiple_choice")),
        _cap(group.get("max_group_select"), "max_group_select"),
        _cap(group.get("max_option_quantity"), "max_option_quantity"),
        _sort_order(group.get("sort_order")),
    )
    opt_rows = [(str(o.get("id") or uuid.uuid4()), _option_values(o)) for o in options]

    now = _now()
    with db_connect() as conn:
        # ids are global across restaurants; never adopt another restaurant's rows
        for table in ("addon_groups_drafts", "addon_groups"):
            if _foreign_ids(conn, table, [gid], rid):
                raise AddonDraftError(f"Add-on group {gid} belongs to another restaurant")
        for table in ("addon_options_drafts", "addon_options"):
            taken = _foreign_ids(conn, table, [oid for oid, _ in opt_rows], rid)
            if taken:
                raise AddonDraftError(f"Add-on option {taken[0]} belongs to another restaurant")

        sets = ", ".join(f"{c}=excluded.{c}" for c in GROUP_COLUMNS)
        conn.execute(
            f"""
            INSERT INTO addon_groups_drafts
              (id, restaurant_id, {', '.join(GROUP_COLUMNS)}, state, archived_at, created_at, updated_at)
            VALUES (?, ?, {_qmarks(GROUP_COLUMNS)}, 'draft', NULL, ?, ?)
            ON CONFLICT(id) DO UPDATE SET {sets}, archived_at=NULL, updated_at=excluded.updated_at
            """,
            (gid, rid, *values, now, now),
        )

        osets = ", ".join(f"{c}=excluded.{c}" for c in OPTION_COLUMNS)
        for oid, ovals in opt_rows:
            conn.execute(
                f"""
                INSERT INTO addon_options_drafts
                  (id, group_id, restaurant_id, {', '.join(OPTION_COLUMNS)}, state, archived_at, created_at, updated_at)
                VALUES (?, ?, ?, {_qmarks(OPTION_COLUMNS)}, 'draft', NULL, ?, ?)
                ON CONFLICT(id) DO UPDATE SET {osets}, group_id=excluded.group_id,
                  archived_at=NULL, updated_at=excluded.updated_at
                """,
                (oid, gid, rid, *ovals, now, now),
            )

        keep = [oid for oid, _ in opt_rows]
        qs = "UPDATE addon_options_drafts SET archived_at=?, updated_at=? WHERE group_id=? AND archived_at IS NULL"
        args: List[Any] = [now, now, gid]
        if keep:
            qs += f" AND id NOT IN ({_qmarks(keep)})"
            args += keep
        conn.execute(qs, args)
        conn.commit()

        row = conn.execute("SELECT * FROM addon_groups_drafts WHERE id=?", (gid,)).fetchone()
        opts = _options_by_group(conn, [gid])

    return group_to_dict(row, opts.get(gid, []))


def archive_draft_group(restaurant_id: int, group_id: Any) -> bool:
    """Soft-archive a draft group and its options. False if the group is unknown."""
    rid = int(restaurant_id)
    gid = str(group_id)
    now = _now()
    with db_connect() as conn:
        cur = conn.execute(
            """
            UPDATE addon_groups_drafts SET archived_at=?, updated_at=?
            WHERE id=? AND restaurant_id=? AND archived_at IS NULL
            """,
            (now, now, gid, rid),
        )
        if cur.rowcount == 0:
            return False
        conn.execute(
            "UPDATE addon_options_drafts SET archived_at=?, updated_at=? WHERE group_id=? AND archived_at IS NULL",
            (now, now, gid),
        )
        conn.commit()
    log.info("Archived draft add-on group %s (restaurant %s)", gid, rid)
    return True


# ------------------------------------------------------------
# Diagnostics
# ------------------------------------------------------------
def _count(conn: sqlite3.Connection, sql: str, args: Sequence[Any]) -> int:
    return int(conn.execute(sql, args).fetchone()[0])


def publish_readiness(restaurant_id: int) -> Dict[str, Any]:
    """
    Snapshot of draft vs live add-on state and anything that would stop a
    draft link from being promoted on the next publish.
    """
    from .drafts import load_draft

    rid = int(restaurant_id)
    draft = load_draft(rid)
    draft_keys = {
        it.get("external_key")
        for it in ((draft or {}).get("draft") or {}).get("items", [])
        if it.get("external_key")
    }

    with db_connect() as conn:
        counts = {
            "live_groups": _count(conn, "SELECT COUNT(*) FROM addon_groups WHERE restaurant_id=? AND archived_at IS NULL", (rid,)),
            "draft_groups": _count(conn, "SELECT COUNT(*) FROM addon_groups_drafts WHERE restaurant_id=? AND archived_at IS NULL", (rid,)),
            "live_options": _count(conn, "SELECT COUNT(*) FROM addon_options WHERE restaurant_id=? AND archived_at IS NULL", (rid,)),
            "draft_options": _count(conn, "SELECT COUNT(*) FROM addon_options_drafts WHERE restaurant_id=? AND archived_at IS NULL", (rid,)),
            "live_links": _count(conn, "SELECT COUNT(*) FROM item_addon_links WHERE restaurant_id=?", (rid,)),
            "draft_links": _count(conn, "SELECT COUNT(*) FROM item_addon_links_drafts WHERE restaurant_id=?", (rid,)),
        }
        links = conn.execute(
            "SELECT item_id, item_external_key, group_id FROM item_addon_links_drafts WHERE restaurant_id=?",
            (rid,),
        ).fetchall()
        active_groups = {g["id"] for g in _active_draft_groups(conn, rid)}
        live_keys = set(item_ids_for_keys(conn, rid, [l["item_external_key"] for l in links]))

    missing_keys = sorted({
        l["item_external_key"] for l in links
        if l["item_external_key"] and l["item_external_key"] not in draft_keys | live_keys
    })
    missing_groups = sorted({l["group_id"] for l in links if l["group_id"] not in active_groups})
    without_key = sum(1 for l in links if not l["item_external_key"])

    return {
        "restaurant_id": rid,
        "has_draft": draft is not None,
        "counts": counts,
        "links_without_key": without_key,
        "unresolved_item_keys": missing_keys,
        "unknown_group_ids": missing_groups,
        "publish_ready": draft is not None and not missing_keys and not missing_groups,
    }
