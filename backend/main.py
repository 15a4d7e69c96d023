"""
HoloDoc Capture - Python Backend
FastAPI server for document capture rectification, matching and linking.
"""

import argparse
import asyncio
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from routers import documents
from services.capture import CaptureSettings, configure_coordinator
from services.progress_manager import get_progress_manager

# Global progress manager for WebSocket updates
progress_manager = get_progress_manager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    # Startup
    print("Starting HoloDoc Capture Backend...")
    print("=" * 50)

    settings = CaptureSettings()
    coordinator = configure_coordinator(
        settings,
        listener=progress_manager.listener_for(asyncio.get_running_loop()),
    )

    if settings.data_dir is not None:
        print(f"Data directory: {settings.data_dir.absolute()}")
    else:
        print("Data directory: (in-memory)")
    print(f"Known documents: {len(coordinator.store)}")
    print(f"Match threshold: {coordinator.matcher.threshold:.3f} ({settings.match_preset})")
    print("Backend ready!")
    print("=" * 50)

    yield

    # Shutdown
    print("Shutting down HoloDoc Capture Backend...")


app = FastAPI(
    title="HoloDoc Capture API",
    description="Backend API for head-mounted document capture",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware for the headset client
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for local development
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(documents.router, prefix="/api/documents", tags=["Documents"])


@app.get("/health")
async def health_check() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "service": "holodoc-capture"}


@app.websocket("/ws/progress")
async def websocket_progress(websocket: WebSocket):
    """WebSocket endpoint for real-time capture progress."""
    await websocket.accept()
    progress_manager.add_client(websocket)

    try:
        while True:
            # Keep connection alive
            await websocket.receive_text()
    except WebSocketDisconnect:
        progress_manager.remove_client(websocket)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "HoloDoc Capture API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


def main():
    """Main entry point for the backend server."""
    settings = CaptureSettings()
    parser = argparse.ArgumentParser(description="HoloDoc Capture Backend")
    parser.add_argument("--host", default=settings.server_host, help="Host to bind to")
    parser.add_argument("--port", type=int, default=settings.server_port, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
