# server/routes/chat.py
# Flask Blueprint: POST /chat (and /api/chat), the chat admission endpoint.
# The pipeline raises GatewayError subclasses; observability.py renders them.

import json

from flask import Blueprint, Response, after_this_request, current_app, jsonify, request
from werkzeug.exceptions import RequestEntityTooLarge

# ---- Robust imports: package mode first, then top-level fallbacks ----
try:
    from ..errors import BadRequest, PayloadTooLarge                        # dual-mode import
    from ..services.pipeline import ChatPipeline, parse_chat_request        # dual-mode import
except ImportError:
    from errors import BadRequest, PayloadTooLarge                          # dual-mode fallback
    from services.pipeline import ChatPipeline, parse_chat_request          # dual-mode fallback

chat_bp = Blueprint("chat", __name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _pipeline() -> ChatPipeline:
    return current_app.extensions["chat_pipeline"]


def _read_json_body():
    """Decode the request body; only application/json is accepted."""
    limit = current_app.config.get("MAX_CONTENT_LENGTH")
    if limit and request.content_length is not None and request.content_length > limit:
        raise PayloadTooLarge()
    if not request.is_json:
        raise BadRequest("Invalid JSON in request body")
    try:
        raw = request.get_data(cache=True)
    except RequestEntityTooLarge as exc:
        raise PayloadTooLarge() from exc
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise BadRequest("Invalid JSON in request body") from exc


@chat_bp.route("/chat", methods=["POST"])
@chat_bp.route("/api/chat", methods=["POST"])
def chat():
    """
    Admit a widget chat turn and relay the upstream answer (JSON or SSE).
    Body: { "instanceId": "...", "messages": [ {"role": "...", "content": "..."} ], "sessionId": "..." }
    """
    pipeline = _pipeline()
    deadline = pipeline.proxy.start_deadline()  # the request budget starts on arrival
    chat_req = parse_chat_request(_read_json_body())
    admission = pipeline.admit(chat_req, request.headers, deadline=deadline)

    # Usage is counted once the response has been handed off, whatever its outcome.
    @after_this_request
    def _schedule_analytics(resp):
        resp.call_on_close(lambda: pipeline.record_usage(admission))
        return resp

    result = pipeline.forward(admission)
    if result.is_stream:
        return Response(
            result.stream,
            status=result.status,
            content_type=result.content_type,
            headers=SSE_HEADERS,
        )
    return jsonify(result.payload), result.status
