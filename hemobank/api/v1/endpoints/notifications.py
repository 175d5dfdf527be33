from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession
from uuid import UUID
import asyncio
import logging

from hemobank.api.v1.deps import get_current_actor, get_db, require_super_admin
from hemobank.core.exceptions import HemoBankError
from hemobank.core.security import Actor, decode_actor
from hemobank.schemas.notification import (
    EmergencyBroadcast, MarkReadRequest, NotificationPage, NotificationResponse,
)
from hemobank.services.notification_service import notification_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=NotificationPage)
async def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await notification_service.list_for_recipient(db, actor.id, page=page, limit=limit)


@router.get("/unread-count")
async def get_unread_count(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return {"unread_count": await notification_service.unread_count(db, actor.id)}


@router.put("/read-all")
async def mark_all_read(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return {"updated": await notification_service.mark_all_read(db, actor.id)}


@router.put("/read")
async def mark_many_read(
    payload: MarkReadRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return {"updated": await notification_service.mark_many_read(db, payload.notification_ids, actor.id)}


@router.put("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await notification_service.mark_read(db, notification_id, actor.id)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    await notification_service.delete(db, notification_id, actor.id)


@router.post("/emergency", response_model=list[NotificationResponse], status_code=201)
async def broadcast_emergency(
    payload: EmergencyBroadcast,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_super_admin),
):
    return await notification_service.broadcast_emergency(
        db, payload.title, payload.message, priority=payload.priority, created_by=actor.id
    )


@router.websocket("/ws")
async def notifications_socket(
    websocket: WebSocket,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db),
):
    """
    Push channel for the caller's user, hospital and role notifications.

    Client messages: {"type": "ping"} and {"type": "mark_read", "notification_id": ...}.
    Missed pushes are not replayed; clients re-fetch the list after reconnecting.
    """
    try:
        actor = decode_actor(token)
    except HemoBankError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    subscription = notification_service.hub.subscribe(actor.channels())
    logger.info(f"Realtime client connected: user {actor.id}")

    async def forward():
        while True:
            message = await subscription.get()
            await websocket.send_json(jsonable_encoder(message))

    sender = asyncio.create_task(forward())
    try:
        await websocket.send_json({
            "event": "connected",
            "payload": {"unread_count": await notification_service.unread_count(db, actor.id)},
        })
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"event": "error", "payload": {"message": "Malformed JSON"}})
                continue
            kind = data.get("type") if isinstance(data, dict) else None
            if kind == "ping":
                await websocket.send_json({"event": "pong"})
            elif kind == "mark_read":
                try:
                    notification = await notification_service.mark_read(
                        db, UUID(str(data.get("notification_id"))), actor.id
                    )
                    await websocket.send_json({"event": "notification_read", "payload": {"id": str(notification.id)}})
                except (HemoBankError, ValueError) as e:
                    await websocket.send_json({"event": "error", "payload": {"message": str(e)}})
            else:
                await websocket.send_json({"event": "error", "payload": {"message": "Unknown message type"}})
    except WebSocketDisconnect:
        logger.info(f"Realtime client disconnected: user {actor.id}")
    finally:
        sender.cancel()
        subscription.close()
