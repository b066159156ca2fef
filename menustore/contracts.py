# menustore/contracts.py
"""
Contracts & validators for the **draft menu document**.

The portal stays thin: it hands the raw JSON body to validate_draft_document()
and the Draft Store calls it again before any write, so a malformed document
can never reach the database.

Document shape:
  {
    "categories": [{id, name, description, sort_order, image_url}, ...],
    "items":      [{id, external_key, name, price, category_id, addons, ...}, ...],
    "links":      [...]   # opaque to the server, kept for the editor
  }
"""
from __future__ import annotations

import json
from decimal import Decimal, DecimalException, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

DraftDocument = Dict[str, Any]

DOCUMENT_LIST_KEYS = ("categories", "items", "links")

# largest value a SQLite INTEGER column holds
MAX_PRICE_CENTS = 2 ** 63 - 1


def _is_intlike(x: Any) -> bool:
    try:
        int(x)
        return True
    except Exception:
        return False


def _is_id(x: Any) -> bool:
    """Temp ids are client-chosen strings; live ids are integers."""
    return isinstance(x, (str, int)) and not isinstance(x, bool)


def empty_document() -> DraftDocument:
    return {"categories": [], "items": [], "links": []}


def price_to_cents(raw: Any) -> Optional[int]:
    """
    Convert a draft/CSV price (dollars, number or string) to integer cents.
      12.5 / "12.50" / "$12.50" -> 1250
      "" / None                 -> None
    Raises ValueError for anything non-numeric or beyond MAX_PRICE_CENTS.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = Decimal(str(raw))
    else:
        s = str(raw).strip().replace(",", "")
        if not s:
            return None
        if s[0] in "$€£":
            s = s[1:].strip()
        try:
            value = Decimal(s)
        except InvalidOperation:
            raise ValueError(f"Invalid price value: {raw!r}")
    if not value.is_finite():
        raise ValueError(f"Invalid price value: {raw!r}")
    if not price_in_range(value):
        raise ValueError(f"Price out of range: {raw!r}")
    try:
        return int((value * 100).to_integral_value())
    except DecimalException as e:
        raise ValueError(f"Invalid price value: {raw!r}") from e


def price_in_range(value: Decimal) -> bool:
    """True when ``value`` dollars fits in MAX_PRICE_CENTS (either sign)."""
    if not value.is_finite() or value.adjusted() > 18:
        return False
    return abs(value) * 100 <= MAX_PRICE_CENTS


def cents_to_price(cents: Optional[int]) -> Optional[float]:
    if cents is None:
        return None
    return round(int(cents) / 100.0, 2)


def validate_draft_document(payload: Any) -> Tuple[bool, str]:
    """Shape-check a draft document. Returns (ok, error_message)."""
    if not isinstance(payload, dict):
        return False, "draft must be an object"

    for key in DOCUMENT_LIST_KEYS:
        if key in payload and payload[key] is not None and not isinstance(payload[key], list):
            return False, f"{key} must be a list"

    for i, cat in enumerate(payload.get("categories") or []):
        if not isinstance(cat, dict):
            return False, f"categories[{i}] must be an object"
        if "id" in cat and cat["id"] is not None and not _is_id(cat["id"]):
            return False, f"categories[{i}].id must be a string or integer"
        name = cat.get("name", "")
        if not isinstance(name, str) or not name.strip():
            return False, f"categories[{i}].name must be a non-empty string"
        if "description" in cat and cat["description"] is not None and not isinstance(cat["description"], str):
            return False, f"categories[{i}].description must be a string"
        if "sort_order" in cat and cat["sort_order"] is not None and not _is_intlike(cat["sort_order"]):
            return False, f"categories[{i}].sort_order must be an integer or null"

    for i, it in enumerate(payload.get("items") or []):
        if not isinstance(it, dict):
            return False, f"items[{i}] must be an object"
        if "id" in it and it["id"] is not None and not _is_id(it["id"]):
            return False, f"items[{i}].id must be a string or integer"
        name = it.get("name", "")
        if not isinstance(name, str) or not name.strip():
            return False, f"items[{i}].name must be a non-empty string"
        key = it.get("external_key")
        if key is not None and (not isinstance(key, str) or not key.strip()):
            return False, f"items[{i}].external_key must be a non-empty string"
        try:
            price_to_cents(it.get("price"))
        except ValueError:
            return False, f"items[{i}].price must be a number"
        if "category_id" in it and it["category_id"] is not None and not _is_id(it["category_id"]):
            return False, f"items[{i}].category_id must be a string or integer"
        if "sort_order" in it and it["sort_order"] is not None and not _is_intlike(it["sort_order"]):
            return False, f"items[{i}].sort_order must be an integer or null"
        addons = it.get("addons")
        if addons is not None:
            if not isinstance(addons, list):
                return False, f"items[{i}].addons must be a list"
            if not all(_is_id(g) for g in addons):
                return False, f"items[{i}].addons must contain group ids"

    # must round-trip through JSON before it is stored
    try:
        json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as e:
        return False, f"draft is not JSON-serializable: {e}"

    return True, ""


def normalize_document(payload: DraftDocument) -> DraftDocument:
    """Fill missing top-level lists; callers validate first."""
    doc = dict(payload)
    for key in DOCUMENT_LIST_KEYS:
        if not isinstance(doc.get(key), list):
            doc[key] = []
    return doc


def item_addon_group_ids(item: Dict[str, Any]) -> List[str]:
    """Group ids embedded on a draft item, stringified and deduplicated in order."""
    seen: List[str] = []
    for gid in item.get("addons") or []:
        sgid = str(gid)
        if sgid not in seen:
            seen.append(sgid)
    return seen
