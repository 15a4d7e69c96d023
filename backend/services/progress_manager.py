"""Progress manager for WebSocket-based ingestion updates."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

from fastapi import WebSocket

from services.capture.models import IngestState

STAGE_PERCENT: Dict[IngestState, float] = {
    IngestState.RECEIVED: 0.0,
    IngestState.RECTIFYING: 10.0,
    IngestState.FINGERPRINTING: 40.0,
    IngestState.MATCHING: 55.0,
    IngestState.CREATING: 75.0,
    IngestState.UPDATING: 75.0,
    IngestState.LINK_CHECK: 90.0,
    IngestState.DONE: 100.0,
    IngestState.FAILED: 100.0,
}


class ProgressManager:
    """Manages WebSocket connections and broadcasts capture progress."""

    def __init__(self):
        self.clients: List[WebSocket] = []

    def add_client(self, websocket: WebSocket):
        """Add a WebSocket client."""
        self.clients.append(websocket)

    def remove_client(self, websocket: WebSocket):
        """Remove a WebSocket client."""
        if websocket in self.clients:
            self.clients.remove(websocket)

    async def broadcast(self, message: Dict[str, Any]):
        """Broadcast a message to all connected clients."""
        disconnected = []

        for client in list(self.clients):
            try:
                await client.send_text(json.dumps(message))
            except Exception:
                disconnected.append(client)

        # Clean up disconnected clients
        for client in disconnected:
            self.remove_client(client)

    async def send_stage(self, capture_id: str, state: IngestState, detail: Optional[str] = None):
        """Send one state-machine transition of a capture."""
        if state is IngestState.DONE:
            await self.broadcast({"type": "complete", "captureId": capture_id, "documentId": detail})
        elif state is IngestState.FAILED:
            await self.broadcast({"type": "error", "captureId": capture_id, "error": detail})
        else:
            await self.broadcast({
                "type": "progress",
                "captureId": capture_id,
                "step": state.value,
                "percent": STAGE_PERCENT[state],
                "message": detail,
            })

    def listener_for(self, loop: asyncio.AbstractEventLoop) -> Callable[[str, IngestState, Optional[str]], None]:
        """Listener that ingestion threads can call to schedule broadcasts on ``loop``."""

        def _listener(capture_id: str, state: IngestState, detail: Optional[str]) -> None:
            if not self.clients or loop.is_closed():
                return
            asyncio.run_coroutine_threadsafe(self.send_stage(capture_id, state, detail), loop)

        return _listener


# Global instance
_progress_manager: Optional[ProgressManager] = None


def get_progress_manager() -> ProgressManager:
    """Get the global progress manager instance."""
    global _progress_manager
    if _progress_manager is None:
        _progress_manager = ProgressManager()
    return _progress_manager
