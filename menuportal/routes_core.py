# menuportal/routes_core.py
from flask import Blueprint, jsonify
from datetime import datetime, timezone

core_bp = Blueprint("core", __name__)


@core_bp.get("/health")
def health():
    return jsonify({
        "status": "ok",
        "time": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    })


@core_bp.get("/__ping")
def ping():
    return jsonify({"ok": True})
