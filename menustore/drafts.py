# menustore/drafts.py
from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .contracts import (
    DraftDocument,
    empty_document,
    item_addon_group_ids,
    normalize_document,
    validate_draft_document,
)
from .db import _now, db_connect

log = logging.getLogger(__name__)


class DraftValidationError(ValueError):
    """Draft payload rejected before any write (bad shape / not JSON)."""


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------
def new_external_key() -> str:
    return str(uuid.uuid4())


def _decode_payload(raw: Optional[str]) -> DraftDocument:
    if not raw:
        return empty_document()
    try:
        doc = json.loads(raw)
    except (TypeError, ValueError):
        log.warning("Stored draft payload is not valid JSON; serving an empty shell")
        return empty_document()
    if not isinstance(doc, dict):
        return empty_document()
    return normalize_document(doc)


def _encode_payload(doc: DraftDocument) -> str:
    return json.dumps(doc, ensure_ascii=False, allow_nan=False)


def _upsert_payload(conn: sqlite3.Connection, restaurant_id: int, doc: DraftDocument) -> str:
    now = _now()
    conn.execute(
        """
        INSERT INTO menu_drafts (restaurant_id, payload, created_at, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(restaurant_id) DO UPDATE SET
          payload = excluded.payload,
          updated_at = excluded.updated_at
        """,
        (int(restaurant_id), _encode_payload(doc), now, now),
    )
    return now


def ensure_external_keys(doc: DraftDocument) -> int:
    """Give every draft item an external key. Mutates ``doc``; returns how many were generated."""
    generated = 0
    for it in doc.get("items") or []:
        key = it.get("external_key")
        if isinstance(key, str) and key.strip():
            continue
        it["external_key"] = new_external_key()
        generated += 1
    return generated


def draft_link_pairs(doc: DraftDocument) -> List[Tuple[str, str, Optional[str]]]:
    """
    (item_external_key, group_id, draft_item_id) for every add-on id embedded on
    the draft's items, deduplicated on (key, group).
    """
    pairs: List[Tuple[str, str, Optional[str]]] = []
    seen = set()
    for it in doc.get("items") or []:
        key = it.get("external_key")
        if not key:
            continue
        item_id = str(it["id"]) if it.get("id") is not None else None
        for gid in item_addon_group_ids(it):
            if (key, gid) in seen:
                continue
            seen.add((key, gid))
            pairs.append((key, gid, item_id))
    return pairs


def find_draft_item(doc: DraftDocument, item_id: Any) -> Optional[Dict[str, Any]]:
    """Locate a draft item by its (temp or live) id or by external key."""
    sid = str(item_id)
    for it in doc.get("items") or []:
        if it.get("id") is not None and str(it["id"]) == sid:
            return it
    for it in doc.get("items") or []:
        if it.get("external_key") == sid:
            return it
    return None


# ------------------------------------------------------------
# Public API consumed by menuportal/app.py and the publish engine
# ------------------------------------------------------------
def load_draft(restaurant_id: int) -> Optional[Dict[str, Any]]:
    """Existing draft or None (no lazy creation)."""
    with db_connect() as conn:
        row = conn.execute(
            "SELECT payload, updated_at FROM menu_drafts WHERE restaurant_id=?",
            (int(restaurant_id),),
        ).fetchone()
    if not row:
        return None
    return {
        "restaurant_id": int(restaurant_id),
        "draft": _decode_payload(row["payload"]),
        "updated_at": row["updated_at"],
    }


def get_draft(restaurant_id: int) -> Dict[str, Any]:
    """Return the restaurant's draft, creating and persisting an empty shell on first read."""
    existing = load_draft(restaurant_id)
    if existing is not None:
        return existing

    doc = empty_document()
    now = _now()
    with db_connect() as conn:
        # a concurrent first read may have created it; keep whichever landed first
        conn.execute(
            """
            INSERT INTO menu_drafts (restaurant_id, payload, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(restaurant_id) DO NOTHING
            """,
            (int(restaurant_id), _encode_payload(doc), now, now),
        )
        conn.commit()
    log.info("Created empty menu draft for restaurant %s", restaurant_id)
    return load_draft(restaurant_id) or {"restaurant_id": int(restaurant_id), "draft": doc, "updated_at": now}


def save_draft(restaurant_id: int, document: Any) -> Dict[str, Any]:
    """
    Validate, key, and persist a full draft document (last write wins).

    - rejects malformed / non-serializable input before any write
    - assigns an external key to every item missing one
    - upserts the document keyed by restaurant
    - replaces the restaurant's draft add-on links from each item's ``addons``
    Document and links are written in one transaction.
    """
    ok, err = validate_draft_document(document)
    if not ok:
        raise DraftValidationError(err)

    doc = normalize_document(json.loads(_encode_payload(document)))
    generated = ensure_external_keys(doc)
    pairs = draft_link_pairs(doc)

    # Import here to avoid circular dependency at module level
    from .addon_drafts import replace_item_links

    with db_connect() as conn:
        updated_at = _upsert_payload(conn, restaurant_id, doc)
        replace_item_links(conn, restaurant_id, pairs)
        conn.commit()

    log.info(
        "Saved draft for restaurant %s: %d categories, %d items, %d new keys, %d add-on links",
        restaurant_id, len(doc["categories"]), len(doc["items"]), generated, len(pairs),
    )
    return {"restaurant_id": int(restaurant_id), "draft": doc, "updated_at": updated_at}


def write_draft_payload(restaurant_id: int, document: DraftDocument) -> str:
    """Persist a document as-is (no link recompute). Returns the new updated_at."""
    with db_connect() as conn:
        updated_at = _upsert_payload(conn, restaurant_id, document)
        conn.commit()
    return updated_at
