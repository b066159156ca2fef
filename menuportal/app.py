# menuportal/app.py
from flask import Flask, jsonify, request, make_response

# --- Standard libs & typing ---
import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, Tuple

# safer filename + big-file error handling
from werkzeug.utils import secure_filename
from werkzeug.exceptions import RequestEntityTooLarge

from dotenv import load_dotenv

# --- Paths / .env ---
ROOT = Path(__file__).resolve().parents[1]
load_dotenv(ROOT / ".env")

from menustore import addon_drafts, live_menu, menu_csv
from menustore import drafts as drafts_store
from menustore.addon_selection import validate_selection
from menustore.contracts import validate_draft_document
from menustore.publish import PublishError, publish_menu

# ------------------------
# App & Config
# ------------------------
app = Flask(__name__)

app.config["SECRET_KEY"] = os.getenv("MENULINE_SECRET_KEY") or "dev-secret-change-me"
app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MENULINE_MAX_UPLOAD_MB") or 20) * 1024 * 1024
app.config["MENULINE_ENV"] = os.getenv("MENULINE_ENV") or "development"

from menuportal.routes_core import core_bp
from menuportal.routes_debug import debug_bp

app.register_blueprint(core_bp)
app.register_blueprint(debug_bp)

_TRUTHY = {"1", "true", "yes", "on"}

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _fail(error: str, status: int, **extra: Any) -> Tuple[Any, int]:
    return jsonify({"ok": False, "error": error, **extra}), status


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _truthy(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or "").strip().lower() in _TRUTHY


# ------------------------
# Error handlers
# ------------------------
@app.errorhandler(RequestEntityTooLarge)
def _too_large(_e):
    return _fail("File too large. Try a smaller file or raise MENULINE_MAX_UPLOAD_MB.", 413)


@app.errorhandler(sqlite3.Error)
def _storage_error(e):
    app.logger.exception("Storage error on %s %s", request.method, request.path)
    return _fail(f"storage: {e}", 500)


# ------------------------
# Draft
# ------------------------
@app.get("/api/restaurants/<int:restaurant_id>/draft")
def draft_get(restaurant_id: int):
    """Current draft (created empty on first read); ?include_addons=1 adds add-on drafts."""
    draft = drafts_store.get_draft(restaurant_id)
    out = {"ok": True, "draft": draft["draft"], "updated_at": draft["updated_at"]}
    if _truthy(request.args.get("include_addons")):
        out.update(addon_drafts.load_addon_drafts(restaurant_id))
    return jsonify(out)


@app.put("/api/restaurants/<int:restaurant_id>/draft")
def draft_save(restaurant_id: int):
    """Replace the whole draft document. Accepts the document or {"payload": document}."""
    if not request.is_json:
        return _fail("Expected JSON payload", 400)
    body = request.get_json(silent=True)
    if isinstance(body, dict) and isinstance(body.get("payload"), dict):
        body = body["payload"]

    # 🔒 Validate document contract before touching storage
    ok, err = validate_draft_document(body)
    if not ok:
        return _fail(f"schema: {err}", 400)

    try:
        saved = drafts_store.save_draft(restaurant_id, body)
    except drafts_store.DraftValidationError as e:
        return _fail(f"schema: {e}", 400)
    return jsonify({"ok": True, "draft": saved["draft"], "updated_at": saved["updated_at"]})


# ------------------------
# Publish
# ------------------------
@app.post("/api/restaurants/<int:restaurant_id>/publish")
def publish(restaurant_id: int):
    try:
        receipt = publish_menu(restaurant_id)
    except PublishError as e:
        if e.error == "NO_DRAFT":
            return _fail("NO_DRAFT", 400, stage=e.stage, message="Nothing to publish")
        app.logger.exception("Publish failed for restaurant %s at %s", restaurant_id, e.stage)
        return _fail(e.error, 500, stage=e.stage)
    return jsonify(receipt)


# ------------------------
# Bulk CSV
# ------------------------
@app.post("/api/restaurants/<int:restaurant_id>/menu-csv")
def menu_csv_post(restaurant_id: int):
    """
    import / bulk reconcile.
      JSON body:  {mode, rows: [...] | csv: "...", confirm}
      multipart:  file=<.csv|.xlsx>, mode, confirm
    """
    upload = request.files.get("file")
    if upload is not None:
        mode = request.form.get("mode")
        confirm = _truthy(request.form.get("confirm"))
    else:
        body = _json_body()
        mode = body.get("mode")
        confirm = _truthy(body.get("confirm"))

    if mode not in menu_csv.MODES:
        return _fail("mode must be import or bulk", 400)

    try:
        if upload is not None:
            filename = secure_filename(upload.filename or "")
            rows = menu_csv.parse_upload(upload.read(), filename)
        elif isinstance(body.get("rows"), list):
            rows = menu_csv.coerce_rows(body["rows"])
        elif isinstance(body.get("csv"), str):
            rows = menu_csv.parse_csv_text(body["csv"])
        else:
            return _fail("rows are required", 400)
        result = menu_csv.reconcile_menu_csv(restaurant_id, mode, rows, confirm=confirm)
    except menu_csv.CsvValidationError as e:
        return _fail("Validation failed", 400, rowErrors=e.row_errors)
    except menu_csv.CsvParseError as e:
        return _fail(str(e), 400)

    return jsonify({"ok": True, **result})


@app.get("/api/restaurants/<int:restaurant_id>/menu-csv")
def menu_csv_get(restaurant_id: int):
    mode = request.args.get("mode")
    if mode == "sample":
        body, mimetype, filename = menu_csv.sample_csv().encode("utf-8"), "text/csv; charset=utf-8", "menu-sample.csv"
    elif mode == "export":
        body, mimetype, filename = menu_csv.export_menu_csv(restaurant_id).encode("utf-8-sig"), "text/csv; charset=utf-8", "menu-export.csv"
    elif mode == "export_xlsx":
        body, mimetype, filename = menu_csv.export_menu_xlsx(restaurant_id), XLSX_MIMETYPE, "menu-export.xlsx"
    else:
        return _fail("Unsupported mode", 400)

    resp = make_response(body)
    resp.headers["Content-Type"] = mimetype
    resp.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return resp


# ------------------------
# Add-on drafts
# ------------------------
@app.post("/api/restaurants/<int:restaurant_id>/addon-groups/<group_id>/assign")
def addon_group_assign(restaurant_id: int, group_id: str):
    body = _json_body()
    try:
        result = addon_drafts.assign_group_to_items(restaurant_id, group_id, body.get("items"))
    except addon_drafts.AssignmentError as e:
        return _fail(str(e), 400)
    return jsonify({"ok": True, **result})


@app.put("/api/restaurants/<int:restaurant_id>/addon-drafts/groups")
def addon_group_save(restaurant_id: int):
    if not request.is_json:
        return _fail("Expected JSON payload", 400)
    try:
        group = addon_drafts.save_draft_group(restaurant_id, request.get_json(silent=True))
    except addon_drafts.AddonDraftError as e:
        return _fail(str(e), 400)
    return jsonify({"ok": True, "group": group})


@app.delete("/api/restaurants/<int:restaurant_id>/addon-drafts/groups/<group_id>")
def addon_group_archive(restaurant_id: int, group_id: str):
    if not addon_drafts.archive_draft_group(restaurant_id, group_id):
        return _fail("Add-on group not found", 404)
    return jsonify({"ok": True, "archived": group_id})


# ------------------------
# Live menu
# ------------------------
@app.get("/api/restaurants/<int:restaurant_id>/menu")
def live_menu_get(restaurant_id: int):
    return jsonify({"ok": True, **live_menu.get_live_menu(restaurant_id)})


@app.put("/api/restaurants/<int:restaurant_id>/menu/reorder")
def live_menu_reorder(restaurant_id: int):
    body = _json_body()
    categories = body.get("categories") or []
    items = body.get("items") or []
    if not isinstance(categories, list) or not isinstance(items, list):
        return _fail("categories and items must be lists", 400)
    try:
        updated = live_menu.reorder_menu(restaurant_id, categories=categories, items=items)
    except (AttributeError, TypeError, ValueError) as e:
        return _fail(f"Invalid reorder payload: {e}", 400)
    return jsonify({"ok": True, "updated": updated})


@app.get("/api/items/<int:item_id>")
def live_item_get(item_id: int):
    item = live_menu.get_live_item(item_id)
    if item is None:
        return _fail("Item not found", 404)
    return jsonify({"ok": True, "item": item})


@app.get("/api/items/<int:item_id>/addons")
def live_item_addons(item_id: int):
    if live_menu.get_live_item(item_id) is None:
        return _fail("Item not found", 404)
    return jsonify({"ok": True, "item_id": item_id, "addonGroups": live_menu.get_addons_for_item(item_id)})


@app.post("/api/items/<int:item_id>/addons/validate")
def live_item_addons_validate(item_id: int):
    """Check a customer's add-on selection against the item's live group limits."""
    if live_menu.get_live_item(item_id) is None:
        return _fail("Item not found", 404)
    selection = _json_body().get("selection") or {}
    if not isinstance(selection, dict):
        return _fail("selection must be an object", 400)
    errors = validate_selection(live_menu.get_addons_for_item(item_id), selection)
    return jsonify({"ok": True, "valid": not errors, "errors": errors})


# ------------------------
# Run
# ------------------------
if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=app.config["MENULINE_ENV"] != "production")
