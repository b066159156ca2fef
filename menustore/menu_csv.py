# menustore/menu_csv.py
from __future__ import annotations

import csv
import difflib
import io
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Any, Dict, List, Optional, Tuple

from openpyxl import Workbook, load_workbook

from .contracts import price_in_range
from .db import _chunks, _now, _qmarks, db_connect
from .live_menu import list_live_categories, list_live_items

log = logging.getLogger(__name__)

MODES = ("import", "bulk")

EXPORT_COLUMNS = ["id", "external_key", "name", "price", "category", "description", "tags"]
SAMPLE_COLUMNS = ["name", "price", "category", "description", "tags"]

# CSV tag -> menu_items flag
TAG_FIELDS = {
    "vegan": "is_vegan",
    "vegetarian": "is_vegetarian",
    "18_plus": "is_18_plus",
    "18+": "is_18_plus",
}

CATEGORY_SIMILARITY = 0.8


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class CsvParseError(ValueError):
    """Upload could not be read as rows (bad file, unsupported type, broken CSV)."""


class CsvValidationError(ValueError):
    """One or more rows failed validation; nothing was written."""

    def __init__(self, row_errors: List[Dict[str, Any]]):
        super().__init__("Validation failed")
        self.row_errors = row_errors


# ---------------------------------------------------------------------------
# Header handling / parsing
# ---------------------------------------------------------------------------

_CANONICAL_HEADERS = {
    "id": {"id", "item_id", "ID"},
    "external_key": {"external_key", "externalKey"},
    "name": {"name", "Name"},
    "price": {"price", "Price"},
    "category": {"category", "Category"},
    "description": {"description", "Description"},
    "tags": {"tags", "Tags"},
}


def _normalize_header(header: Any) -> str:
    h = str(header or "").strip()
    for canonical, aliases in _CANONICAL_HEADERS.items():
        if h in aliases:
            return canonical
    return h


def _canonical_row(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map tolerated header spellings onto canonical keys; first spelling present wins."""
    row: Dict[str, Any] = {}
    for k, v in (raw or {}).items():
        key = _normalize_header(k)
        if key in _CANONICAL_HEADERS and row.get(key) not in (None, ""):
            continue
        row[key] = v
    return row


def parse_csv_text(text: str) -> List[Dict[str, Any]]:
    if text is None or not str(text).strip():
        raise CsvParseError("CSV is empty.")
    reader = csv.DictReader(StringIO(str(text)))
    if not reader.fieldnames:
        raise CsvParseError("CSV is missing a header row.")
    rows: List[Dict[str, Any]] = []
    try:
        for raw in reader:
            if None in raw:
                raise CsvParseError(f"Too many fields on line {reader.line_num}.")
            if all(v in (None, "") or not str(v).strip() for v in raw.values()):
                continue
            rows.append(_canonical_row(raw))
    except csv.Error as e:
        raise CsvParseError(f"Failed to parse CSV: {e}") from e
    return rows


def parse_xlsx_bytes(data: bytes) -> List[Dict[str, Any]]:
    try:
        wb = load_workbook(io.BytesIO(data), data_only=True, read_only=True)
    except Exception as e:  # openpyxl raises several unrelated types for bad files
        raise CsvParseError(f"Invalid XLSX file: {e}") from e
    if not wb.worksheets:
        raise CsvParseError("XLSX file has no worksheets.")

    rows_iter = wb.worksheets[0].iter_rows(values_only=True)
    try:
        header_row = next(rows_iter)
    except StopIteration:
        raise CsvParseError("XLSX file is empty or missing a header row.")
    headers = [str(h).strip() if h is not None else f"column_{i + 1}" for i, h in enumerate(header_row)]

    rows: List[Dict[str, Any]] = []
    for values in rows_iter:
        if values is None or all(v in (None, "") for v in values):
            continue
        raw = {headers[i]: v for i, v in enumerate(values) if i < len(headers)}
        rows.append(_canonical_row(raw))
    wb.close()
    return rows


def parse_upload(file_bytes: bytes, filename: str) -> List[Dict[str, Any]]:
    """
    Route-friendly helper: decide parser based on filename extension.
    Raises CsvParseError for anything unreadable.
    """
    if not filename:
        raise CsvParseError("File has no name; expected .csv or .xlsx.")
    lower = filename.lower()
    if lower.endswith(".csv"):
        try:
            text = file_bytes.decode("utf-8-sig", errors="strict")
        except UnicodeDecodeError:
            text = file_bytes.decode("utf-8-sig", errors="replace")
        return parse_csv_text(text)
    if lower.endswith(".xlsx"):
        return parse_xlsx_bytes(file_bytes)
    raise CsvParseError("Unsupported file type; only .csv and .xlsx are accepted.")


def coerce_rows(rows: Any) -> List[Dict[str, Any]]:
    """JSON ``rows`` payload -> canonical row dicts."""
    if not isinstance(rows, list):
        raise CsvParseError("rows must be a list")
    out = []
    for i, r in enumerate(rows):
        if not isinstance(r, dict):
            raise CsvParseError(f"rows[{i}] must be an object")
        out.append(_canonical_row(r))
    return out


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@dataclass
class ParsedRow:
    row_index: int
    name: str
    price: Decimal
    category: str
    id: Optional[str] = None
    external_key: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    @property
    def price_cents(self) -> int:
        return int((self.price * 100).to_integral_value())

    def flags(self) -> Dict[str, int]:
        out = {"is_vegan": 0, "is_vegetarian": 0, "is_18_plus": 0}
        for t in self.tags:
            f = TAG_FIELDS.get(t)
            if f:
                out[f] = 1
        return out


def normalize_tag(raw: str) -> str:
    t = raw.strip().lower()
    return "_".join(t.split()).replace("-", "_")


def split_tags(raw: Any) -> List[str]:
    if raw is None:
        return []
    parts = str(raw).replace("|", ",").split(",")
    return [normalize_tag(p) for p in parts if p.strip()]


def _parse_price(raw: Any) -> Optional[Decimal]:
    if raw is None or isinstance(raw, bool):
        return None
    s = str(raw).strip()
    if not s:
        return None
    if s[0] in "$€£":
        s = s[1:].strip()
    try:
        value = Decimal(s)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def _text(v: Any) -> str:
    return "" if v is None else str(v).strip()


def _opt_text(v: Any) -> Optional[str]:
    s = _text(v)
    return s or None


def suggest_category(name: str, existing: List[str]) -> Optional[str]:
    """Closest existing category when ``name`` looks like a near-duplicate of it."""
    lowered = name.lower()
    best, best_ratio = None, 0.0
    for cand in existing:
        if cand.lower() == lowered:
            return None
        ratio = difflib.SequenceMatcher(None, lowered, cand.lower()).ratio()
        if ratio > best_ratio:
            best, best_ratio = cand, ratio
    return best if best_ratio >= CATEGORY_SIMILARITY else None


def validate_rows(
    rows: List[Dict[str, Any]],
    existing_categories: Optional[List[str]] = None,
) -> Tuple[List[ParsedRow], List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Check every row independently.
    Returns (parsed_rows, row_errors, warnings); rowIndex is 1-based.
    """
    existing = [c for c in (existing_categories or []) if c]
    parsed: List[ParsedRow] = []
    errors: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []

    for idx, raw in enumerate(rows, start=1):
        name = _text(raw.get("name"))
        category = _text(raw.get("category"))
        price = _parse_price(raw.get("price"))
        ok = True

        if not name:
            errors.append({"rowIndex": idx, "reason": "Name is required"})
            ok = False
        if not category:
            errors.append({"rowIndex": idx, "reason": "Category is required"})
            ok = False
        if price is None or price <= 0:
            errors.append({"rowIndex": idx, "reason": "Price must be greater than 0"})
            ok = False
        elif not price_in_range(price):
            errors.append({"rowIndex": idx, "reason": "Price is too large"})
            ok = False

        tags = split_tags(raw.get("tags"))
        unknown = [t for t in tags if t not in TAG_FIELDS]
        if unknown:
            warnings.append({"rowIndex": idx, "reason": f"Ignoring unsupported tags: {', '.join(unknown)}"})

        if category:
            suggestion = suggest_category(category, existing)
            if suggestion:
                warnings.append({
                    "rowIndex": idx,
                    "reason": f'Category "{category}" is new; did you mean "{suggestion}"?',
                    "suggestion": suggestion,
                })

        if ok:
            parsed.append(ParsedRow(
                row_index=idx,
                name=name,
                price=price,
                category=category,
                id=_opt_text(raw.get("id")),
                external_key=_opt_text(raw.get("external_key")),
                description=_opt_text(raw.get("description")),
                tags=[t for t in tags if t in TAG_FIELDS],
            ))

    return parsed, errors, warnings


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def _match_live_item(
    row: ParsedRow,
    by_id: Dict[str, Dict[str, Any]],
    by_name: Dict[str, Dict[str, Any]],
) -> Optional[Dict[str, Any]]:
    ident = row.id or row.external_key
    if ident:
        return by_id.get(ident)
    return by_name.get(row.name.lower())


def _ensure_category(conn, restaurant_id: int, name: str, cache: Dict[str, str], now: str) -> str:
    key = name.lower()
    if key in cache:
        return cache[key]
    # archived rows with the same name are revived instead of duplicated
    row = conn.execute(
        "SELECT id FROM menu_categories WHERE restaurant_id=? AND lower(name)=? LIMIT 1",
        (int(restaurant_id), key),
    ).fetchone()
    if row:
        conn.execute(
            "UPDATE menu_categories SET archived_at=NULL, updated_at=? WHERE restaurant_id=? AND id=?",
            (now, int(restaurant_id), row["id"]),
        )
        cache[key] = row["id"]
        return row["id"]

    nxt = conn.execute(
        "SELECT COALESCE(MAX(sort_order), 0) + 1 FROM menu_categories WHERE restaurant_id=?",
        (int(restaurant_id),),
    ).fetchone()[0]
    cid = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO menu_categories (id, restaurant_id, name, sort_order, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (cid, int(restaurant_id), name, int(nxt), now, now),
    )
    cache[key] = cid
    return cid


def reconcile_menu_csv(
    restaurant_id: int,
    mode: str,
    rows: List[Dict[str, Any]],
    confirm: bool = False,
) -> Dict[str, Any]:
    """
    import: create every row.  bulk: diff rows against live items (create,
    update, archive unmatched); without ``confirm`` only a preview is returned
    and nothing is written.
    Raises CsvValidationError (no writes) when any row is invalid or two rows
    match the same live item.
    """
    if mode not in MODES:
        raise CsvParseError("mode must be import or bulk")
    rid = int(restaurant_id)

    live_cats = list_live_categories(rid)
    parsed, errors, warnings = validate_rows(rows, [c["name"] for c in live_cats])
    if errors:
        raise CsvValidationError(errors)

    live_items = list_live_items(rid) if mode == "bulk" else []
    by_id: Dict[str, Dict[str, Any]] = {}
    by_name: Dict[str, Dict[str, Any]] = {}
    for it in live_items:
        by_id[str(it["id"])] = it
        if it.get("external_key"):
            by_id[str(it["external_key"])] = it
        by_name.setdefault(str(it["name"]).lower(), it)

    creates: List[ParsedRow] = []
    updates: List[Tuple[ParsedRow, Dict[str, Any]]] = []
    touched: Dict[int, int] = {}
    duplicates: List[Dict[str, Any]] = []
    for row in parsed:
        existing = _match_live_item(row, by_id, by_name) if mode == "bulk" else None
        if existing is None:
            creates.append(row)
        elif existing["id"] in touched:
            duplicates.append({
                "rowIndex": row.row_index,
                "reason": f"Matches the same item as row {touched[existing['id']]}",
            })
        else:
            touched[existing["id"]] = row.row_index
            updates.append((row, existing))
    if duplicates:
        raise CsvValidationError(duplicates)
    to_archive = [it["id"] for it in live_items if it["id"] not in touched]

    if mode == "bulk" and not confirm:
        return {
            "mode": "bulk",
            "preview": {
                "willCreate": len(creates),
                "willUpdate": len(updates),
                "willArchive": len(to_archive),
            },
            "warnings": warnings,
        }

    now = _now()
    summary = {"created": 0, "updated": 0, "archived": 0}
    cat_cache = {c["name"].strip().lower(): c["id"] for c in live_cats}

    with db_connect() as conn:
        for row in creates:
            cid = _ensure_category(conn, rid, row.category, cat_cache, now)
            flags = row.flags()
            conn.execute(
                """
                INSERT INTO menu_items
                  (restaurant_id, external_key, name, description, price_cents, category_id,
                   is_vegan, is_vegetarian, is_18_plus, archived_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                ON CONFLICT(restaurant_id, external_key) DO UPDATE SET
                  name=excluded.name, description=excluded.description,
                  price_cents=excluded.price_cents, category_id=excluded.category_id,
                  is_vegan=excluded.is_vegan, is_vegetarian=excluded.is_vegetarian,
                  is_18_plus=excluded.is_18_plus, archived_at=NULL, updated_at=excluded.updated_at
                """,
                (
                    rid, row.external_key or str(uuid.uuid4()), row.name, row.description,
                    row.price_cents, cid, flags["is_vegan"], flags["is_vegetarian"],
                    flags["is_18_plus"], now, now,
                ),
            )
            summary["created"] += 1

        for row, existing in updates:
            cid = _ensure_category(conn, rid, row.category, cat_cache, now)
            flags = row.flags()
            conn.execute(
                """
                UPDATE menu_items SET name=?, description=?, price_cents=?, category_id=?,
                  is_vegan=?, is_vegetarian=?, is_18_plus=?, updated_at=?
                WHERE id=? AND restaurant_id=?
                """,
                (
                    row.name, row.description, row.price_cents, cid,
                    flags["is_vegan"], flags["is_vegetarian"], flags["is_18_plus"], now,
                    existing["id"], rid,
                ),
            )
            summary["updated"] += 1

        if mode == "bulk":
            for chunk in _chunks(to_archive):
                conn.execute(
                    f"""
                    UPDATE menu_items SET archived_at=?, updated_at=?
                    WHERE restaurant_id=? AND archived_at IS NULL AND id IN ({_qmarks(chunk)})
                    """,
                    (now, now, rid, *chunk),
                )
            summary["archived"] = len(to_archive)
        conn.commit()

    log.info("CSV %s for restaurant %s: %s", mode, rid, summary)
    return {"mode": mode, **summary, "warnings": warnings}


# ---------------------------------------------------------------------------
# Sample / export
# ---------------------------------------------------------------------------

def _tags_from_flags(item: Dict[str, Any]) -> str:
    tags = []
    if item.get("is_vegan"):
        tags.append("vegan")
    if item.get("is_vegetarian"):
        tags.append("vegetarian")
    if item.get("is_18_plus"):
        tags.append("18+")
    return ", ".join(tags)


def _write_csv(columns: List[str], rows: List[Dict[str, Any]]) -> str:
    buf = StringIO()
    writer = csv.DictWriter(buf, fieldnames=columns, lineterminator="\n")
    writer.writeheader()
    for r in rows:
        writer.writerow(r)
    return buf.getvalue()


def sample_csv() -> str:
    return _write_csv(SAMPLE_COLUMNS, [{
        "name": "Signature Burger",
        "price": "12.50",
        "category": "Burgers",
        "description": "Our classic burger with house sauce",
        "tags": "vegetarian",
    }])


def export_rows(restaurant_id: int) -> List[Dict[str, Any]]:
    """Live non-archived items as rows in EXPORT_COLUMNS order (re-importable in bulk mode)."""
    cats = {c["id"]: c["name"] for c in list_live_categories(restaurant_id)}
    return [
        {
            "id": it["id"],
            "external_key": it["external_key"],
            "name": it["name"] or "",
            "price": f"{it['price_cents'] / 100:.2f}",
            "category": cats.get(it.get("category_id"), ""),
            "description": it.get("description") or "",
            "tags": _tags_from_flags(it),
        }
        for it in list_live_items(restaurant_id)
    ]


def export_menu_csv(restaurant_id: int) -> str:
    return _write_csv(EXPORT_COLUMNS, export_rows(restaurant_id))


def export_menu_xlsx(restaurant_id: int) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Menu"
    ws.append(EXPORT_COLUMNS)
    for r in export_rows(restaurant_id):
        ws.append([r[c] for c in EXPORT_COLUMNS])

    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()
