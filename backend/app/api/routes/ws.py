"""
Live audit activity over WebSocket.

Authentication uses the session cookie set by /api/auth/login. Clients are
closed with 4001 when unauthenticated and 4003 without audit permission.
"""
import asyncio
import logging
import uuid

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.routes.auth import COOKIE_NAME, identity_from_token
from app.db import get_db
from app.services import permissions

logger = logging.getLogger(__name__)

router = APIRouter()


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    """Drain client frames until the socket closes"""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass


@router.websocket("/organizations/{organization_id}")
async def organization_activity(
    websocket: WebSocket,
    organization_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    identity = await identity_from_token(db, websocket.cookies.get(COOKIE_NAME))
    if identity is None:
        await websocket.close(code=4001, reason="Unauthorized")
        return
    if not await permissions.check_permission(db, identity, organization_id):
        await websocket.close(code=4003, reason="Insufficient permissions")
        return
    # Release the connection; the stream itself never touches the database
    await db.close()

    broadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    subscription = broadcaster.subscribe(organization_id)
    logger.info(f"User {identity.user_id} subscribed to activity of organization {organization_id}")

    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        while True:
            next_event = asyncio.create_task(subscription.get())
            done, _ = await asyncio.wait(
                {next_event, disconnected}, return_when=asyncio.FIRST_COMPLETED
            )
            if disconnected in done:
                next_event.cancel()
                break
            event = next_event.result()
            if event is None:
                await websocket.close()
                break
            await websocket.send_json(event)
    except WebSocketDisconnect:
        pass
    finally:
        disconnected.cancel()
        broadcaster.unsubscribe(subscription)
        logger.info(f"User {identity.user_id} left activity stream of organization {organization_id}")
