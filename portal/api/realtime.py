import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from portal.api.announcements import ensure_scope_allowed
from portal.config import settings
from portal.exceptions import InvalidAudienceError, TransportError
from portal.middleware.authentication import decode_identity, resolve_viewer
from portal.realtime.scopes import parse_scope
from portal.realtime.sessions import ViewerSession
from portal.realtime.subscriptions import FeedUpdate, SubscriptionHandle, SubscriptionManager, get_subscription_manager

router = APIRouter()

logger = logging.getLogger(__name__)


class UpdateBuffer:
    """
    Bounded queue of updates waiting to be sent to one viewer.

    Every update carries the complete list, so when a slow viewer falls
    behind the oldest pending update is dropped rather than the newest.
    """

    def __init__(self, maxsize: int = settings.REALTIME_SEND_QUEUE_SIZE):
        self._queue: "asyncio.Queue[FeedUpdate]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def put(self, update: FeedUpdate) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning(f"Viewer is falling behind; dropped {self.dropped} stale update(s)")
        self._queue.put_nowait(update)

    async def get(self) -> FeedUpdate:
        return await self._queue.get()


async def _forward_updates(websocket: WebSocket, updates: UpdateBuffer) -> None:
    while True:
        update = await updates.get()
        await websocket.send_json(update.model_dump(mode="json"))


async def _receive_commands(websocket: WebSocket, handle: SubscriptionHandle) -> None:
    try:
        while True:
            message = await websocket.receive_text()
            if message == "resume":
                await handle.subscription.resume()
    except WebSocketDisconnect:
        return


async def stream_updates(websocket: WebSocket, handle: SubscriptionHandle, updates: UpdateBuffer) -> None:
    """
    Send updates and read commands until either side stops. A failed send
    ends the connection instead of leaving the receive loop running alone.
    """
    sender = asyncio.create_task(_forward_updates(websocket, updates))
    receiver = asyncio.create_task(_receive_commands(websocket, handle))
    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sender, receiver):
            task.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)

    if sender in done and not sender.cancelled() and sender.exception() is not None:
        error = sender.exception()
        if isinstance(error, WebSocketDisconnect):
            return
        logger.error(f"Sending to {handle.scope} failed: {str(error)}")
        try:
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Update delivery failed")
        except RuntimeError as e:
            logger.debug(f"Websocket already closed: {str(e)}")


@router.websocket("/ws/announcements")
async def announcements_feed(
    websocket: WebSocket,
    token: str = Query(...),
    scope: Optional[str] = Query(None),
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    """
    Stream the caller's announcements in real time.

    The first message is the full snapshot; every later message carries the
    change (insert, replace, remove, snapshot after a reconcile, or stale)
    together with the complete ordered list. Sending ``resume`` retries a
    stale subscription.
    """
    try:
        identity = decode_identity(token)
    except HTTPException as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.detail)
        return

    viewer = resolve_viewer(identity)
    if viewer is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="No announcement audience")
        return

    try:
        resolved = parse_scope(scope, viewer)
        ensure_scope_allowed(identity, resolved)
    except (InvalidAudienceError, HTTPException) as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.detail)
        return

    await websocket.accept()
    updates = UpdateBuffer()

    async with ViewerSession(manager, viewer) as session:
        try:
            handle = await session.watch(resolved, updates.put)
        except TransportError as e:
            logger.error(f"Could not open {resolved} for {identity.user_id}: {e.detail}")
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Announcements unavailable")
            return

        logger.info(f"Viewer {identity.user_id} subscribed to {resolved}")
        await stream_updates(websocket, handle, updates)
        logger.info(f"Viewer {identity.user_id} disconnected from {resolved}")
