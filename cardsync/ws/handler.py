import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from cardsync.game.errors import MalformedEventError
from cardsync.game.session_supervisor import SessionSupervisor
from cardsync.ws import protocol as P

log = logging.getLogger(__name__)


async def _submit(websocket: WebSocket, supervisor: SessionSupervisor, raw) -> None:
    try:
        event = await supervisor.submit(raw)
    except MalformedEventError as exc:
        await websocket.send_json({"type": P.MSG_ERROR, "detail": exc.reason})
        return
    if event is None:
        await websocket.send_json({"type": P.MSG_EVENT_DUPLICATE})
        return
    await websocket.send_json(
        {"type": P.MSG_EVENT_ACK, "session_id": event.session_id, "seq": event.seq}
    )


async def websocket_handler(websocket: WebSocket):
    supervisor: SessionSupervisor = websocket.app.state.supervisor
    await websocket.accept()
    log.info("Event stream connected from %s", websocket.client)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": P.MSG_ERROR, "detail": "Invalid JSON"})
                continue
            if not isinstance(message, dict):
                await websocket.send_json(
                    {"type": P.MSG_ERROR, "detail": "Message must be an object"}
                )
                continue
            msg_type = message.get("type")

            try:
                if msg_type == P.MSG_HEARTBEAT:
                    await websocket.send_json({"type": P.MSG_HEARTBEAT_ACK})

                elif msg_type == P.MSG_EVENT:
                    await _submit(websocket, supervisor, message.get("event"))

                elif msg_type == P.MSG_EVENTS:
                    events = message.get("events")
                    if not isinstance(events, list):
                        await websocket.send_json(
                            {"type": P.MSG_ERROR, "detail": "events must be a list"}
                        )
                        continue
                    for item in events:
                        await _submit(websocket, supervisor, item)

                elif msg_type == P.MSG_SNAPSHOT:
                    session_id = message.get("session_id")
                    if not session_id:
                        await websocket.send_json(
                            {"type": P.MSG_ERROR, "detail": "session_id is required"}
                        )
                        continue
                    await websocket.send_json({
                        "type": P.MSG_SESSION_SNAPSHOT,
                        "session_id": session_id,
                        "session": supervisor.snapshot(session_id),
                    })

                else:
                    await websocket.send_json(
                        {
                            "type": P.MSG_ERROR,
                            "detail": f"Unknown message type: {msg_type}",
                        }
                    )

            except ValueError as exc:
                await websocket.send_json(
                    {"type": P.MSG_ERROR, "detail": str(exc)}
                )
            except Exception as exc:
                log.exception("Error handling %s message", msg_type)
                await websocket.send_json(
                    {"type": P.MSG_ERROR, "detail": f"Internal error: {exc}"}
                )

    except WebSocketDisconnect:
        log.info("Event stream from %s disconnected", websocket.client)
