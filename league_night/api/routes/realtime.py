"""WebSocket route for live league night change events."""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from league_night.database import db
from league_night.database.models import LeagueNightInstance
from league_night.services import auth_service
from league_night.services.realtime_manager import ConnectionStatus, get_channel_registry
from league_night.utils.constants import REALTIME_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/api/leagues/{league_id}/nights/{instance_id}/ws")
async def league_night_events(websocket: WebSocket, league_id: int, instance_id: int):
    """
    WebSocket endpoint streaming change events for one league night.

    Requires JWT token in query parameter: ?token=<jwt_token>
    Clients send "ping" to stay alive; the server answers "pong".
    """
    await websocket.accept()

    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=1008, reason="Missing authentication token")
        return

    payload = auth_service.verify_token(token)
    user_id = auth_service.get_user_id(payload) if payload else None
    if user_id is None:
        await websocket.close(code=1008, reason="Invalid authentication token")
        return

    async with db.AsyncSessionLocal() as session:
        instance = await session.get(LeagueNightInstance, instance_id)
    if instance is None or instance.league_id != league_id:
        await websocket.close(code=1008, reason="League night not found")
        return

    registry = get_channel_registry()
    subscriber = await registry.subscribe(instance_id, websocket, user_id)
    status = ConnectionStatus.DISCONNECTED

    try:
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=REALTIME_TIMEOUT_SECONDS)
                await registry.touch(subscriber)
                if data == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                # Probe the client; a dead connection ends the loop
                try:
                    await websocket.send_text("ping")
                except Exception:
                    status = ConnectionStatus.ERROR
                    break
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for user {user_id} on league night {instance_id}")
    except Exception as e:
        status = ConnectionStatus.ERROR
        logger.error(f"WebSocket error for user {user_id} on league night {instance_id}: {e}")
    finally:
        await registry.unsubscribe(subscriber, status)
