from __future__ import annotations

from flask import Blueprint, Response, current_app, request, stream_with_context

from cotiz.auth import current_actor
from cotiz.realtime import get_realtime_hub, stream_messages
from cotiz.validators import parse_int


realtime_bp = Blueprint("realtime", __name__, url_prefix="/api/realtime")


@realtime_bp.route("/stream", methods=["GET"])
def stream():
    actor = current_actor()
    hub = get_realtime_hub()
    max_messages = None
    if request.args.get("max_messages"):
        max_messages = parse_int(request.args.get("max_messages"), 1, 1, 1000)
    generator = stream_messages(
        hub,
        actor.client_id,
        keepalive_seconds=float(current_app.config.get("REALTIME_KEEPALIVE_SECONDS", 15) or 15),
        max_messages=max_messages,
    )
    return Response(
        stream_with_context(generator),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
