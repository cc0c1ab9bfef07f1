"""
Realtime Router
===============
WebSocket endpoint that pushes "table changed" signals to dashboard clients.
Clients re-fetch the affected list on each signal.
"""
import asyncio
import logging

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect

from db import SessionLocal
from dependencies import resolve_user_from_token
from services.realtime import change_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])


async def _forward_signals(websocket: WebSocket, queue: asyncio.Queue):
    while True:
        message = await queue.get()
        await websocket.send_text(message)


@router.websocket("/ws/changes")
async def changes_websocket(websocket: WebSocket, token: str = Query(...)):
    """
    Dashboard clients call: ws://host/ws/changes?token=xxx
    Receives: {"type": "table_changed", "table": "tasks" | "activity_log" | "profiles"}
    Sends "ping" to keep the connection alive, gets "pong" back.
    """
    db = SessionLocal()
    try:
        user = resolve_user_from_token(token, db)
        profile_id = user.profile.id if user.profile else None
    except HTTPException as e:
        logger.warning(f"Rejected change WebSocket: {e.detail}")
        await websocket.close(code=4001, reason="Not authenticated")
        return
    finally:
        db.close()

    if profile_id is None:
        await websocket.close(code=4003, reason="Profile not found")
        return

    queue = await change_manager.connect(websocket, profile_id)
    sender = asyncio.create_task(_forward_signals(websocket, queue))

    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")

    except WebSocketDisconnect:
        logger.info(f"Profile {profile_id} disconnected from change WebSocket")

    except Exception as e:
        logger.error(f"Change WebSocket error for profile {profile_id}: {e}")

    finally:
        sender.cancel()
        change_manager.disconnect(profile_id)
