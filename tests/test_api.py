"""
HTTP API (Flask test client).

Covers:
  - GET/PUT draft (bare document or {"payload": ...}, schema errors, include_addons)
  - POST publish (receipt, NO_DRAFT)
  - POST/GET menu-csv (JSON rows, csv text, multipart upload, rowErrors, sample/export)
  - add-on group assign / save / archive
  - live menu, item, item add-ons, selection validate, reorder
  - debug publish-readiness (hidden in production), health, ping
"""

from __future__ import annotations

import csv
import importlib
import io
import sqlite3
from typing import Optional

import pytest
from openpyxl import load_workbook

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


# ---------------------------------------------------------------------------
# Flask test client fixture
# ---------------------------------------------------------------------------
@pytest.fixture()
def client(fresh_db, monkeypatch):
    from menuportal.app import app
    app.config["TESTING"] = True
    monkeypatch.setitem(app.config, "MENULINE_ENV", "development")
    with app.test_client() as c:
        yield c


DOC = {
    "categories": [{"id": "c1", "name": "Mains", "sort_order": 0}],
    "items": [
        {"id": "i1", "name": "Burger", "price": 9.5, "category_id": "c1", "external_key": "k-burger"},
        {"id": "i2", "name": "Fries", "price": "3.00", "category_id": "c1", "external_key": "k-fries"},
    ],
}

SAUCES = {
    "id": "g1",
    "name": "Sauces",
    "required": True,
    "multiple_choice": True,
    "max_group_select": 2,
    "options": [
        {"id": "o1", "name": "Ketchup", "price": 0},
        {"id": "o2", "name": "Mayo", "price": 0.5},
        {"id": "o3", "name": "Aioli", "price": 1},
    ],
}


def _publish_with_sauces(client):
    """Live menu with Burger linked to Sauces; returns {name: item}."""
    assert client.put("/api/restaurants/1/addon-drafts/groups", json=SAUCES).status_code == 200
    doc = {**DOC, "items": [dict(DOC["items"][0], addons=["g1"]), DOC["items"][1]]}
    assert client.put("/api/restaurants/1/draft", json=doc).status_code == 200
    assert client.post("/api/restaurants/1/publish").status_code == 200
    items = client.get("/api/restaurants/1/menu").get_json()["items"]
    return {it["name"]: it for it in items}


# ===========================================================================
# SECTION 1: core
# ===========================================================================

class TestCore:

    def test_health(self, client):
        body = client.get("/health").get_json()
        assert body["status"] == "ok"
        assert body["time"]

    def test_ping(self, client):
        assert client.get("/__ping").get_json() == {"ok": True}


# ===========================================================================
# SECTION 2: draft
# ===========================================================================

class TestDraftApi:

    def test_get_creates_empty(self, client):
        body = client.get("/api/restaurants/1/draft").get_json()
        assert body["ok"] is True
        assert body["draft"]["items"] == []

    def test_put_document(self, client):
        resp = client.put("/api/restaurants/1/draft", json={"items": [{"name": "Soup", "price": 4}]})
        assert resp.status_code == 200
        item = resp.get_json()["draft"]["items"][0]
        assert item["external_key"]

    def test_put_payload_wrapper(self, client):
        resp = client.put("/api/restaurants/1/draft", json={"payload": DOC})
        assert resp.status_code == 200
        body = client.get("/api/restaurants/1/draft").get_json()
        assert [it["name"] for it in body["draft"]["items"]] == ["Burger", "Fries"]

    def test_put_schema_error(self, client):
        resp = client.put("/api/restaurants/1/draft", json={"items": "nope"})
        assert resp.status_code == 400
        assert resp.get_json()["error"].startswith("schema:")

    def test_put_oversized_price(self, client):
        resp = client.put("/api/restaurants/1/draft", json={"items": [{"name": "X", "price": "1e999999999"}]})
        assert resp.status_code == 400
        assert resp.get_json()["error"].startswith("schema:")

    def test_put_requires_json(self, client):
        resp = client.put("/api/restaurants/1/draft", data="items", content_type="text/plain")
        assert resp.status_code == 400

    def test_include_addons(self, client):
        client.put("/api/restaurants/1/addon-drafts/groups", json=SAUCES)
        body = client.get("/api/restaurants/1/draft?include_addons=1").get_json()
        assert [g["name"] for g in body["addonGroups"]] == ["Sauces"]
        assert body["addonLinks"] == []
        assert "stats" in body

    def test_addons_omitted_by_default(self, client):
        body = client.get("/api/restaurants/1/draft").get_json()
        assert "addonGroups" not in body


# ===========================================================================
# SECTION 3: publish
# ===========================================================================

class TestPublishApi:

    def test_no_draft(self, client):
        resp = client.post("/api/restaurants/1/publish")
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["error"] == "NO_DRAFT"
        assert body["stage"] == "load_draft"

    def test_receipt(self, client):
        client.put("/api/restaurants/1/draft", json=DOC)
        body = client.post("/api/restaurants/1/publish").get_json()
        assert body["ok"] is True
        assert body["inserted"]["categories"] == 1
        assert body["inserted"]["items"] == 2
        assert body["items_mapped"] == 2

    def test_republish_is_noop(self, client):
        client.put("/api/restaurants/1/draft", json=DOC)
        client.post("/api/restaurants/1/publish")
        body = client.post("/api/restaurants/1/publish").get_json()
        assert body["inserted"]["items"] == 0
        assert body["updated"]["items"] == 0

    def test_links_promoted(self, client):
        items = _publish_with_sauces(client)
        groups = client.get(f"/api/items/{items['Burger']['id']}/addons").get_json()["addonGroups"]
        assert [g["name"] for g in groups] == ["Sauces"]
        assert [o["name"] for o in groups[0]["options"]] == ["Aioli", "Ketchup", "Mayo"]
        assert client.get(f"/api/items/{items['Fries']['id']}/addons").get_json()["addonGroups"] == []


# ===========================================================================
# SECTION 4: menu-csv
# ===========================================================================

class TestMenuCsvApi:

    def test_import_json_rows(self, client):
        resp = client.post("/api/restaurants/1/menu-csv", json={
            "mode": "import",
            "rows": [{"name": "Burger", "price": "9.50", "category": "Mains"}],
        })
        assert resp.status_code == 200
        assert resp.get_json()["created"] == 1

    def test_import_csv_text(self, client):
        resp = client.post("/api/restaurants/1/menu-csv", json={
            "mode": "import",
            "csv": "Name,Price,Category\nBurger,9.50,Mains\nFries,3,Sides\n",
        })
        assert resp.get_json()["created"] == 2

    def test_bulk_file_preview(self, client):
        client.post("/api/restaurants/1/menu-csv", json={
            "mode": "import",
            "rows": [{"name": "Burger", "price": "9.50", "category": "Mains"}],
        })
        data = {
            "mode": "bulk",
            "confirm": "false",
            "file": (io.BytesIO(b"name,price,category\nSalad,7,Mains\n"), "menu.csv"),
        }
        resp = client.post("/api/restaurants/1/menu-csv", data=data, content_type="multipart/form-data")
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["preview"] == {"willCreate": 1, "willUpdate": 0, "willArchive": 1}
        assert len(client.get("/api/restaurants/1/menu").get_json()["items"]) == 1

    def test_row_errors(self, client):
        resp = client.post("/api/restaurants/1/menu-csv", json={
            "mode": "import",
            "rows": [{"name": "Burger", "price": "0", "category": "Mains"}],
        })
        assert resp.status_code == 400
        assert resp.get_json()["rowErrors"] == [{"rowIndex": 1, "reason": "Price must be greater than 0"}]

    def test_oversized_price_row_error(self, client):
        resp = client.post("/api/restaurants/1/menu-csv", json={
            "mode": "import",
            "rows": [{"name": "X", "price": "1e20", "category": "C"}],
        })
        assert resp.status_code == 400
        assert resp.get_json()["rowErrors"] == [{"rowIndex": 1, "reason": "Price is too large"}]

    def test_bad_mode(self, client):
        resp = client.post("/api/restaurants/1/menu-csv", json={"mode": "merge", "rows": []})
        assert resp.status_code == 400

    def test_rows_required(self, client):
        resp = client.post("/api/restaurants/1/menu-csv", json={"mode": "import"})
        assert resp.status_code == 400

    def test_unsupported_upload(self, client):
        data = {"mode": "import", "file": (io.BytesIO(b"{}"), "menu.json")}
        resp = client.post("/api/restaurants/1/menu-csv", data=data, content_type="multipart/form-data")
        assert resp.status_code == 400

    def test_sample(self, client):
        resp = client.get("/api/restaurants/1/menu-csv?mode=sample")
        assert resp.status_code == 200
        assert resp.headers["Content-Type"].startswith("text/csv")
        assert "menu-sample.csv" in resp.headers["Content-Disposition"]
        assert resp.data.decode("utf-8").startswith("name,price,category")

    def test_export(self, client):
        client.put("/api/restaurants/1/draft", json=DOC)
        client.post("/api/restaurants/1/publish")
        resp = client.get("/api/restaurants/1/menu-csv?mode=export")
        rows = list(csv.DictReader(io.StringIO(resp.data.decode("utf-8-sig"))))
        assert {r["name"] for r in rows} == {"Burger", "Fries"}

    def test_export_xlsx(self, client):
        client.put("/api/restaurants/1/draft", json=DOC)
        client.post("/api/restaurants/1/publish")
        resp = client.get("/api/restaurants/1/menu-csv?mode=export_xlsx")
        wb = load_workbook(io.BytesIO(resp.data))
        assert wb.active.max_row == 3

    def test_export_bad_mode(self, client):
        assert client.get("/api/restaurants/1/menu-csv?mode=pdf").status_code == 400


# ===========================================================================
# SECTION 5: add-on drafts
# ===========================================================================

class TestAddonDraftApi:

    def test_save_group(self, client):
        resp = client.put("/api/restaurants/1/addon-drafts/groups", json=SAUCES)
        group = resp.get_json()["group"]
        assert group["id"] == "g1"
        assert group["required"] is True
        assert len(group["options"]) == 3

    def test_save_group_invalid(self, client):
        resp = client.put("/api/restaurants/1/addon-drafts/groups", json={"name": ""})
        assert resp.status_code == 400

    def test_save_group_bad_sort_order(self, client):
        resp = client.put("/api/restaurants/1/addon-drafts/groups", json={"name": "Sauces", "sort_order": "abc"})
        assert resp.status_code == 400
        assert "sort_order" in resp.get_json()["error"]

    def test_save_group_foreign_option(self, client):
        client.put("/api/restaurants/1/addon-drafts/groups", json=SAUCES)
        resp = client.put("/api/restaurants/2/addon-drafts/groups", json={
            "id": "g2", "name": "Mine", "options": [{"id": "o1", "name": "Stolen"}],
        })
        assert resp.status_code == 400

    def test_archive_group(self, client):
        client.put("/api/restaurants/1/addon-drafts/groups", json=SAUCES)
        resp = client.delete("/api/restaurants/1/addon-drafts/groups/g1")
        assert resp.get_json() == {"ok": True, "archived": "g1"}
        assert client.delete("/api/restaurants/1/addon-drafts/groups/g1").status_code == 404

    def test_assign(self, client):
        items = _publish_with_sauces(client)
        resp = client.post("/api/restaurants/1/addon-groups/g1/assign", json={
            "items": [{"id": items["Fries"]["id"]}],
        })
        assert resp.status_code == 200
        assert resp.get_json()["external_key_map"] == {str(items["Fries"]["id"]): "k-fries"}

        draft = client.get("/api/restaurants/1/draft").get_json()["draft"]
        addons = {it["name"]: it.get("addons") or [] for it in draft["items"]}
        assert addons == {"Burger": [], "Fries": ["g1"]}

    def test_assign_unknown_group(self, client):
        resp = client.post("/api/restaurants/1/addon-groups/nope/assign", json={"items": []})
        assert resp.status_code == 400


# ===========================================================================
# SECTION 6: live menu
# ===========================================================================

class TestLiveApi:

    def test_menu(self, client):
        _publish_with_sauces(client)
        body = client.get("/api/restaurants/1/menu").get_json()
        assert [c["name"] for c in body["categories"]] == ["Mains"]
        assert {it["name"] for it in body["items"]} == {"Burger", "Fries"}

    def test_item(self, client):
        items = _publish_with_sauces(client)
        body = client.get(f"/api/items/{items['Burger']['id']}").get_json()
        assert body["item"]["price"] == 9.5
        assert body["item"]["price_cents"] == 950

    def test_item_not_found(self, client):
        assert client.get("/api/items/999").status_code == 404
        assert client.get("/api/items/999/addons").status_code == 404
        assert client.post("/api/items/999/addons/validate", json={}).status_code == 404

    def test_validate_selection(self, client):
        items = _publish_with_sauces(client)
        url = f"/api/items/{items['Burger']['id']}/addons/validate"

        ok = client.post(url, json={"selection": {"g1": {"o1": 1, "o2": 1}}}).get_json()
        assert ok == {"ok": True, "valid": True, "errors": []}

        bad = client.post(url, json={"selection": {"g1": {"o1": 1, "o2": 1, "o3": 1}}}).get_json()
        assert bad["valid"] is False
        assert [e["code"] for e in bad["errors"]] == ["MAX_GROUP_SELECT"]

        missing = client.post(url, json={"selection": {}}).get_json()
        assert [e["code"] for e in missing["errors"]] == ["REQUIRED"]

    def test_validate_bad_selection(self, client):
        items = _publish_with_sauces(client)
        resp = client.post(f"/api/items/{items['Burger']['id']}/addons/validate", json={"selection": [1]})
        assert resp.status_code == 400

    def test_reorder(self, client):
        items = _publish_with_sauces(client)
        resp = client.put("/api/restaurants/1/menu/reorder", json={
            "items": [
                {"id": items["Fries"]["id"], "sort_order": 0},
                {"id": items["Burger"]["id"], "sort_order": 1},
            ],
        })
        assert resp.get_json()["updated"] == {"categories": 0, "items": 2}
        names = [it["name"] for it in client.get("/api/restaurants/1/menu").get_json()["items"]]
        assert names == ["Fries", "Burger"]

    def test_reorder_other_restaurant_ignored(self, client):
        items = _publish_with_sauces(client)
        resp = client.put("/api/restaurants/2/menu/reorder", json={
            "items": [{"id": items["Burger"]["id"], "sort_order": 5}],
        })
        assert resp.get_json()["updated"]["items"] == 0

    def test_reorder_bad_payload(self, client):
        resp = client.put("/api/restaurants/1/menu/reorder", json={"items": "x"})
        assert resp.status_code == 400


# ===========================================================================
# SECTION 7: debug
# ===========================================================================

class TestDebugApi:

    def test_publish_readiness(self, client):
        _publish_with_sauces(client)
        body = client.get("/debug/restaurants/1/publish-readiness").get_json()
        assert body["ok"] is True
        assert body["publish_ready"] is True
        assert body["counts"]["live_links"] == 1

    def test_hidden_in_production(self, client, monkeypatch):
        from menuportal.app import app
        monkeypatch.setitem(app.config, "MENULINE_ENV", "production")
        assert client.get("/debug/restaurants/1/publish-readiness").status_code == 404
