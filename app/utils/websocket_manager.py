"""
WebSocket manager for live payment tracking
"""
from typing import Dict, Optional

from fastapi import WebSocket

from app.core.logging_config import logger
from app.services.status_poller import PaymentStatusPoller
from app.utils.payment_display import present_payment


class TrackingConnectionManager:
    """Keeps one status poller per connected tracker"""

    def __init__(self):
        # Store active connections: {websocket: poller}
        self.active_connections: Dict[WebSocket, PaymentStatusPoller] = {}

    def connect(self, websocket: WebSocket, poller: PaymentStatusPoller) -> None:
        """Register a tracker (connection should already be accepted)"""
        self.active_connections[websocket] = poller
        logger.info(f"Tracker connected for payment {poller.identifier}")

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a tracker and stop its poller"""
        poller = self.active_connections.pop(websocket, None)
        if poller is not None:
            poller.stop()
            logger.info(f"Tracker disconnected for payment {poller.identifier}")

    def get_poller(self, websocket: WebSocket) -> Optional[PaymentStatusPoller]:
        return self.active_connections.get(websocket)

    async def send_status(self, websocket: WebSocket, poller: PaymentStatusPoller) -> None:
        """Push the poller's latest payment snapshot"""
        message = {
            "type": "status",
            "status": poller.last_status,
            "tracking": poller.is_tracking,
            "payment": present_payment(poller.payment) if poller.payment else None,
        }
        await websocket.send_json(message)

    async def send_tracking(self, websocket: WebSocket, poller: PaymentStatusPoller) -> None:
        await websocket.send_json({"type": "tracking", "active": poller.is_tracking})


# Global instance
tracking_manager = TrackingConnectionManager()
