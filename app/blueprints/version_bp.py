"""
Project Version Blueprint.

Endpoints:
    POST   /api/v1/projects/<pid>/versions          create a snapshot
           Body: { "version_name", "description", "is_baseline", "actor_id" }
    GET    /api/v1/projects/<pid>/versions          history, newest first (?limit=)
    GET    /api/v1/versions/<vid>                   one version (?include_snapshots=1)
    GET    /api/v1/versions/compare?a=<vid>&b=<vid> structural diff A → B
    POST   /api/v1/versions/<vid>/restore           restore live data to a version

Layer contract: parse input, call SnapshotService, return JSON. All
transactions are owned by the service.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from app.core.exceptions import ValidationError
from app.services.snapshot import SnapshotService
from app.utils.errors import register_error_handlers
from app.utils.helpers import current_actor

logger = logging.getLogger(__name__)

version_bp = Blueprint("version_bp", __name__, url_prefix="/api/v1")
register_error_handlers(version_bp)


@version_bp.route("/projects/<int:pid>/versions", methods=["POST"])
def create_version(pid):
    data = request.get_json(silent=True) or {}
    version = SnapshotService.create_snapshot(
        pid,
        name=data.get("version_name") or data.get("name"),
        description=data.get("description"),
        actor_id=current_actor(data),
        is_baseline=bool(data.get("is_baseline", False)),
    )
    return jsonify(version.to_dict()), 201


@version_bp.route("/projects/<int:pid>/versions", methods=["GET"])
def list_versions(pid):
    limit = request.args.get("limit", current_app.config["VERSION_HISTORY_DEFAULT_LIMIT"], type=int)
    if limit < 1:
        raise ValidationError("limit must be positive")
    versions = SnapshotService.get_version_history(pid, limit)
    return jsonify({"items": [v.to_dict() for v in versions], "total": len(versions)})


@version_bp.route("/versions/compare", methods=["GET"])
def compare_versions():
    a = request.args.get("a", type=int)
    b = request.args.get("b", type=int)
    if a is None or b is None:
        raise ValidationError("Query parameters 'a' and 'b' (version ids) are required")
    return jsonify(SnapshotService.compare_versions(a, b))


@version_bp.route("/versions/<int:vid>", methods=["GET"])
def get_version(vid):
    include = request.args.get("include_snapshots", "").lower() in ("1", "true", "yes")
    return jsonify(SnapshotService.get_version(vid).to_dict(include_snapshots=include))


@version_bp.route("/versions/<int:vid>/restore", methods=["POST"])
def restore_version(vid):
    """Replace the project's live subtrees with version ``vid``."""
    data = request.get_json(silent=True) or {}
    result = SnapshotService.restore_to_version(vid, actor_id=current_actor(data))
    return jsonify({
        "version": result["version"].to_dict(),
        "backup": result["backup"].to_dict(),
        "change_event": result["change_event"].to_dict(),
    })
