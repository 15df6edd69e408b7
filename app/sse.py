import json
from flask import Blueprint, Response, current_app
from logging_.engine_logger import get_engine_logger

log = get_engine_logger()

bp = Blueprint("sse", __name__, url_prefix="/events")


@bp.get("/<run_id>")
def events(run_id: str):
    manager = current_app.extensions["run_manager"]
    ctx = manager.get(run_id)
    if ctx is None:
        return Response("Unknown run", status=404)

    log.info(f"[{run_id}] Client connected to SSE stream.")

    # сначала подписка, потом проверка: иначе прогон может закрыть поток между ними
    q = manager.subscribe(run_id)

    if not ctx.running:
        # прогон уже закончился: отдаем итог одним событием и закрываемся
        manager.unsubscribe(run_id)
        final = json.dumps({"type": "run_state", **ctx.state(include_results=False)}, ensure_ascii=False)
        return Response(f"data: {final}\n\n", mimetype="text/event-stream")

    def stream():
        while True:
            msg = q.get()  # блокирующе ждем сообщение или None

            if msg is None:
                log.debug(f"[{run_id}] Received None sentinel, closing SSE stream.")
                break

            yield f"data: {msg}\n\n"

    return Response(stream(), mimetype="text/event-stream")
