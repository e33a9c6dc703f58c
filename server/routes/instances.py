# server/routes/instances.py
# Flask Blueprint: public, read-only views of an instance for the widget.
#   GET /instance/<id>  -> {id, name, theme, features}
#   GET /status/<id>    -> caller's current rate-limit usage (nothing is consumed)

from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request

try:
    from ..errors import BadRequest                                       # dual-mode import
    from ..models import is_valid_instance_id                             # dual-mode import
    from ..schemas import InstanceInfo                                    # dual-mode import
    from ..services.rate_limiter import ip_principal                      # dual-mode import
except ImportError:
    from errors import BadRequest                                         # dual-mode fallback
    from models import is_valid_instance_id                               # dual-mode fallback
    from schemas import InstanceInfo                                      # dual-mode fallback
    from services.rate_limiter import ip_principal                        # dual-mode fallback

instances_bp = Blueprint("instances", __name__)


def _lookup(pipeline, instance_id: str):
    if not is_valid_instance_id(instance_id):
        raise BadRequest("Invalid instance ID format")
    return pipeline.configs.lookup(instance_id)


@instances_bp.route("/instance/<instance_id>", methods=["GET"])
def instance_info(instance_id: str):
    config = _lookup(current_app.extensions["chat_pipeline"], instance_id)
    info = InstanceInfo(
        id=config.id,
        name=config.display_name,
        theme=config.theme.model_dump(by_alias=True),
        features=config.features.model_dump(by_alias=True),
    )
    return jsonify(info.model_dump(by_alias=True)), 200


@instances_bp.route("/status/<instance_id>", methods=["GET"])
def instance_status(instance_id: str):
    pipeline = current_app.extensions["chat_pipeline"]
    config = _lookup(pipeline, instance_id)
    usage = pipeline.limiter.status(
        config,
        ip=ip_principal(request.headers),
        session_id=request.args.get("sessionId") or None,
        now_ms=pipeline.now_ms(),
    )
    return jsonify({
        "instance": {"id": config.id, "name": config.display_name, "status": "online"},
        "rateLimits": usage,
        "lastChecked": datetime.now(timezone.utc).isoformat(),
    }), 200
