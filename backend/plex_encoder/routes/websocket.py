"""WebSocket endpoint relaying service events to dashboards."""
import logging
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from plex_encoder.services.dispatch import dispatch_engine
from plex_encoder.services.notifier import QUEUE_STATUS
from plex_encoder.services.websocket_manager import websocket_manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Stream events to a dashboard.

    Events: job_status, job_progress, scan_progress, schedule_status,
    queue_update and queue_status. A client may send {"type": "ping"} to
    get {"type": "pong"}, or {"type": "snapshot"} to get the full queue.
    """
    await websocket_manager.connect(websocket)
    state = dispatch_engine.state
    await websocket_manager.send_to(websocket, {
        "type": QUEUE_STATUS,
        "paused": state.paused,
        "max_parallel_jobs": state.concurrency_limit,
        "active_count": state.active_count,
    })

    try:
        while True:
            data = await websocket.receive_json()
            request = data.get("type") if isinstance(data, dict) else None

            if request == "ping":
                await websocket_manager.send_to(websocket, {"type": "pong"})
            elif request == "snapshot":
                snapshot = await dispatch_engine.get_queue_snapshot()
                await websocket_manager.send_to(
                    websocket, {"type": "snapshot", **snapshot.model_dump(mode="json")}
                )
    except WebSocketDisconnect:
        logger.info("Dashboard disconnected")
    except ValueError as e:
        logger.warning(f"Closing dashboard connection after bad message: {e}")
    finally:
        websocket_manager.disconnect(websocket)
