"""
Draft Store: one editable menu document per restaurant.

Covers:
  get_draft():
  - first read creates and persists an empty shell
  - repeated reads return the same row
  - restaurants are isolated
  save_draft():
  - external keys assigned to items lacking one, existing keys kept
  - keys survive later saves that change other fields
  - malformed / non-serializable documents rejected before any write
  - draft add-on links rebuilt from each item's addons list (full replace, deduped)
  - last write wins
  contracts:
  - price_to_cents conversions, out-of-range prices rejected before any write
"""

from __future__ import annotations

import importlib
import sqlite3
from typing import Optional

import pytest

from menustore.db import init_schema

# ---------------------------------------------------------------------------
# In-memory DB helpers
# ---------------------------------------------------------------------------
_TEST_CONN: Optional[sqlite3.Connection] = None
_DB_MODULES = ("db", "drafts", "addon_drafts", "publish", "menu_csv", "live_menu")


def _make_test_db() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    init_schema(conn)
    return conn


def _patch_db(monkeypatch):
    global _TEST_CONN
    _TEST_CONN = _make_test_db()

    def mock_connect():
        return _TEST_CONN

    for name in _DB_MODULES:
        monkeypatch.setattr(importlib.import_module(f"menustore.{name}"), "db_connect", mock_connect)
    return _TEST_CONN


@pytest.fixture(autouse=True)
def fresh_db(monkeypatch):
    conn = _patch_db(monkeypatch)
    yield conn
    global _TEST_CONN
    _TEST_CONN = None


import menustore.drafts as drafts_store
from menustore.contracts import MAX_PRICE_CENTS, price_to_cents, validate_draft_document


def _links(conn, rid=1):
    return conn.execute(
        "SELECT item_id, item_external_key, group_id FROM item_addon_links_drafts "
        "WHERE restaurant_id=? ORDER BY group_id",
        (rid,),
    ).fetchall()


def _draft_rows(conn):
    return conn.execute("SELECT COUNT(*) FROM menu_drafts").fetchone()[0]


# ===========================================================================
# SECTION 1: get_draft
# ===========================================================================

class TestGetDraft:

    def test_first_read_creates_empty_shell(self, fresh_db):
        d = drafts_store.get_draft(1)
        assert d["restaurant_id"] == 1
        assert d["draft"] == {"categories": [], "items": [], "links": []}
        assert d["updated_at"]
        assert _draft_rows(fresh_db) == 1

    def test_second_read_reuses_row(self, fresh_db):
        first = drafts_store.get_draft(1)
        second = drafts_store.get_draft(1)
        assert _draft_rows(fresh_db) == 1
        assert first["updated_at"] == second["updated_at"]

    def test_load_draft_does_not_create(self, fresh_db):
        assert drafts_store.load_draft(5) is None
        assert _draft_rows(fresh_db) == 0

    def test_restaurants_isolated(self, fresh_db):
        drafts_store.save_draft(1, {"items": [{"name": "Soup", "price": 4}]})
        other = drafts_store.get_draft(2)
        assert other["draft"]["items"] == []
        assert drafts_store.get_draft(1)["draft"]["items"][0]["name"] == "Soup"


# ===========================================================================
# SECTION 2: save_draft keys
# ===========================================================================

class TestSaveDraftKeys:

    def test_assigns_missing_keys(self, fresh_db):
        saved = drafts_store.save_draft(1, {
            "categories": [{"id": "c1", "name": "Mains"}],
            "items": [
                {"id": "i1", "name": "Burger", "price": 9.5, "category_id": "c1"},
                {"id": "i2", "name": "Fries", "price": "3.00", "category_id": "c1"},
            ],
        })
        keys = [it["external_key"] for it in saved["draft"]["items"]]
        assert all(keys)
        assert len(set(keys)) == 2

    def test_existing_key_kept(self, fresh_db):
        saved = drafts_store.save_draft(1, {"items": [{"name": "Burger", "price": 9, "external_key": "k-burger"}]})
        assert saved["draft"]["items"][0]["external_key"] == "k-burger"

    def test_key_stable_across_edits(self, fresh_db):
        saved = drafts_store.save_draft(1, {"items": [{"id": "i1", "name": "Burger", "price": 9}]})
        doc = saved["draft"]
        key = doc["items"][0]["external_key"]

        doc["items"][0]["name"] = "Cheeseburger"
        doc["items"][0]["price"] = 11
        again = drafts_store.save_draft(1, doc)
        assert again["draft"]["items"][0]["external_key"] == key
        assert drafts_store.get_draft(1)["draft"]["items"][0]["external_key"] == key

    def test_generated_keys_persisted(self, fresh_db):
        saved = drafts_store.save_draft(1, {"items": [{"name": "Tea", "price": 2}]})
        stored = drafts_store.get_draft(1)
        assert stored["draft"]["items"][0]["external_key"] == saved["draft"]["items"][0]["external_key"]


# ===========================================================================
# SECTION 3: save_draft validation
# ===========================================================================

class TestSaveDraftValidation:

    def test_items_must_be_list(self, fresh_db):
        with pytest.raises(drafts_store.DraftValidationError):
            drafts_store.save_draft(1, {"items": "nope"})
        assert _draft_rows(fresh_db) == 0

    def test_document_must_be_object(self, fresh_db):
        with pytest.raises(drafts_store.DraftValidationError):
            drafts_store.save_draft(1, ["not", "a", "document"])

    def test_item_name_required(self, fresh_db):
        with pytest.raises(drafts_store.DraftValidationError, match="name"):
            drafts_store.save_draft(1, {"items": [{"name": "  ", "price": 1}]})

    def test_bad_price_rejected(self, fresh_db):
        with pytest.raises(drafts_store.DraftValidationError, match="price"):
            drafts_store.save_draft(1, {"items": [{"name": "Soup", "price": "cheap"}]})

    def test_non_serializable_rejected(self, fresh_db):
        with pytest.raises(drafts_store.DraftValidationError, match="JSON"):
            drafts_store.save_draft(1, {"items": [], "meta": {1, 2, 3}})
        assert _draft_rows(fresh_db) == 0

    def test_rejected_save_keeps_previous_draft(self, fresh_db):
        drafts_store.save_draft(1, {"items": [{"name": "Soup", "price": 4}]})
        with pytest.raises(drafts_store.DraftValidationError):
            drafts_store.save_draft(1, {"categories": "broken"})
        assert drafts_store.get_draft(1)["draft"]["items"][0]["name"] == "Soup"


# ===========================================================================
# SECTION 4: draft links
# ===========================================================================

class TestDraftLinks:

    def test_links_built_from_addons(self, fresh_db):
        saved = drafts_store.save_draft(1, {"items": [
            {"id": "i1", "name": "Burger", "price": 9, "addons": ["g1", "g2"]},
        ]})
        key = saved["draft"]["items"][0]["external_key"]
        rows = _links(fresh_db)
        assert [(r["item_external_key"], r["group_id"]) for r in rows] == [(key, "g1"), (key, "g2")]
        assert all(r["item_id"] == "i1" for r in rows)

    def test_links_fully_replaced(self, fresh_db):
        doc = drafts_store.save_draft(1, {"items": [
            {"name": "Burger", "price": 9, "addons": ["g1", "g2"]},
        ]})["draft"]
        doc["items"][0]["addons"] = ["g2"]
        drafts_store.save_draft(1, doc)
        assert [r["group_id"] for r in _links(fresh_db)] == ["g2"]

    def test_links_deduplicated(self, fresh_db):
        drafts_store.save_draft(1, {"items": [{"name": "Burger", "price": 9, "addons": ["g1", "g1"]}]})
        assert len(_links(fresh_db)) == 1

    def test_numeric_group_ids_stringified(self, fresh_db):
        drafts_store.save_draft(1, {"items": [{"name": "Burger", "price": 9, "addons": [7]}]})
        assert _links(fresh_db)[0]["group_id"] == "7"

    def test_other_restaurant_links_untouched(self, fresh_db):
        drafts_store.save_draft(2, {"items": [{"name": "Pho", "price": 12, "addons": ["g9"]}]})
        drafts_store.save_draft(1, {"items": [{"name": "Burger", "price": 9, "addons": []}]})
        assert len(_links(fresh_db, 2)) == 1

    def test_last_write_wins(self, fresh_db):
        drafts_store.save_draft(1, {"items": [{"name": "A", "price": 1}]})
        drafts_store.save_draft(1, {"items": [{"name": "B", "price": 2}]})
        names = [it["name"] for it in drafts_store.get_draft(1)["draft"]["items"]]
        assert names == ["B"]


# ===========================================================================
# SECTION 5: price conversion
# ===========================================================================

class TestPriceToCents:

    @pytest.mark.parametrize("raw,cents", [
        (12.5, 1250),
        ("12.50", 1250),
        ("$3", 300),
        (1, 100),
        ("1,250.00", 125000),
    ])
    def test_valid(self, raw, cents):
        assert price_to_cents(raw) == cents

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_is_none(self, raw):
        assert price_to_cents(raw) is None

    def test_invalid_raises(self):
        with pytest.raises(ValueError):
            price_to_cents("twelve")

    @pytest.mark.parametrize("raw", ["1e999999999", 1e20, "-1e20", "Infinity"])
    def test_out_of_range_raises(self, raw):
        with pytest.raises(ValueError):
            price_to_cents(raw)

    def test_largest_storable_price(self):
        assert price_to_cents("92233720368547758.07") == MAX_PRICE_CENTS


# ===========================================================================
# SECTION 6: oversized prices never reach storage
# ===========================================================================

class TestOversizedPrices:

    @pytest.mark.parametrize("price", ["1e999999999", 1e20])
    def test_save_rejected(self, fresh_db, price):
        with pytest.raises(drafts_store.DraftValidationError, match="price"):
            drafts_store.save_draft(1, {"items": [{"name": "X", "price": price}]})
        assert _draft_rows(fresh_db) == 0

    def test_contract_reports_instead_of_raising(self):
        ok, err = validate_draft_document({"items": [{"name": "X", "price": "1e999999999"}]})
        assert ok is False
        assert "price" in err
