"""
WebSocket route for live payment tracking
"""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.core.logging_config import logger
from app.services.payment_client import PaymentApiClient
from app.services.status_poller import PaymentStatusPoller
from app.utils.websocket_manager import tracking_manager

router = APIRouter(
    prefix="/ws",
    tags=["tracking"]
)


@router.websocket("/payments/{identifier}")
async def track_payment(websocket: WebSocket, identifier: str):
    """
    Live status for one payment

    Client messages: "track" toggles tracking, "stop" disables it,
    "refresh" queries immediately, "ping" answers "pong". Status pushes
    are sent once per transition. Disconnecting stops the poller.
    """
    await websocket.accept()

    api = PaymentApiClient()
    payment_id = int(identifier) if identifier.isdigit() else None

    async def on_status_change(status: str) -> None:
        await tracking_manager.send_status(websocket, poller)

    poller = PaymentStatusPoller(
        api,
        payment_id=payment_id,
        pidx=None if payment_id is not None else identifier,
        on_status_change=on_status_change
    )
    tracking_manager.connect(websocket, poller)

    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
            elif data == "track":
                poller.toggle()
                await tracking_manager.send_tracking(websocket, poller)
            elif data == "stop":
                poller.stop()
                await tracking_manager.send_tracking(websocket, poller)
            elif data == "refresh":
                previous = poller.last_status
                await poller.refresh()
                # A changed status was already pushed by on_status_change
                if poller.last_status == previous:
                    await tracking_manager.send_status(websocket, poller)
            else:
                logger.debug(f"Ignoring tracker message: {data!r}")
    except WebSocketDisconnect:
        pass
    finally:
        tracking_manager.disconnect(websocket)
        api.close()
