import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from backend.app.core.websocket import ws_manager
from backend.app.services.printer_manager import printer_manager, session_to_dict

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time updates."""
    logger.info("WebSocket client connecting...")
    await ws_manager.connect(websocket)
    logger.info("WebSocket client connected")

    try:
        # Send initial status of all printers
        sessions = printer_manager.get_all_sessions()
        for session in sessions:
            await websocket.send_json(
                {
                    "type": "printer_status",
                    "printer_id": session.printer_id,
                    "data": session_to_dict(session),
                }
            )
        logger.info("Sent initial status for %s printers", len(sessions))

        # Keep connection alive and handle incoming messages
        while True:
            data = await websocket.receive_json()

            # Handle ping/pong for keepalive
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})

            # Handle status request
            elif data.get("type") == "get_status":
                printer_id = data.get("printer_id")
                session = printer_manager.get_session(printer_id) if printer_id else None
                if session:
                    await websocket.send_json(
                        {
                            "type": "printer_status",
                            "printer_id": printer_id,
                            "data": session_to_dict(session),
                        }
                    )

    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected normally")
        await ws_manager.disconnect(websocket)
    except Exception as e:
        logger.error("WebSocket error: %s", e, exc_info=True)
        await ws_manager.disconnect(websocket)
