# menuportal/routes_debug.py
from flask import Blueprint, abort, current_app, jsonify

from menustore.addon_drafts import publish_readiness

debug_bp = Blueprint("debug", __name__)


@debug_bp.get("/debug/restaurants/<int:restaurant_id>/publish-readiness")
def publish_readiness_report(restaurant_id: int):
    """
    Why would (or wouldn't) the next publish promote every add-on link?

    Counts draft vs live add-on rows and lists draft links whose item key or
    group cannot be resolved.  Hidden when MENULINE_ENV=production.
    """
    if current_app.config.get("MENULINE_ENV") == "production":
        abort(404)
    return jsonify({"ok": True, **publish_readiness(restaurant_id)})
