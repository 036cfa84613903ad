"""
Camcast Main Application
========================

FastAPI entry point for the camera streaming appliance.

The appliance main loop runs on its own thread (see StreamingAppliance);
this module wires it up from settings and exposes a small HTTP surface
for control and observability next to the signal and stdin channels.

Endpoints:
    GET  /                   - Service information
    GET  /health             - Liveness probe (is process alive?)
    GET  /ready              - Readiness probe (main loop running?)
    GET  /status             - State, clients and counters
    POST /control/{command}  - Submit a control command
    WS   /ws/status          - Real-time status stream
"""

import asyncio
import logging
import os
import threading
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from fastapi import FastAPI, WebSocket
from fastapi.responses import JSONResponse

from camcast.config import Settings, settings
from camcast.capture import (
    CaptureFlags,
    OpenCVCaptureEngine,
    SyntheticCaptureEngine,
    ThreadedCaptureEngine,
)
from camcast.control import (
    ControlSurface,
    StdinCommandReader,
    install_signal_handlers,
    parse_command,
    restore_signal_handlers,
)
from camcast.encoder import BaseEncoder, MJPEGEncoder, RawEncoder
from camcast.output import BroadcastServer, StillWriter
from camcast.streaming import StreamingAppliance


logger = logging.getLogger(__name__)


# =============================================================================
# Global State
# =============================================================================

_appliance: Optional[StreamingAppliance] = None
_control: Optional[ControlSurface] = None
_stdin_reader: Optional[StdinCommandReader] = None
_previous_signal_handlers: Dict[int, object] = {}
_startup_time: float = 0.0
_shutdown_flag: bool = False


# =============================================================================
# Getters
# =============================================================================

def get_appliance() -> Optional[StreamingAppliance]:
    return _appliance

def get_control() -> Optional[ControlSurface]:
    return _control

def is_ready() -> bool:
    return _appliance is not None and _appliance.running


# =============================================================================
# Component Factories
# =============================================================================

def create_capture_engine(config: Settings) -> ThreadedCaptureEngine:
    """Create the capture backend selected in config."""
    backend = config.capture.backend
    common = dict(
        width=config.capture.width,
        height=config.capture.height,
        framerate=config.capture.framerate,
        buffer_count=config.capture.buffer_count,
    )

    if backend == "synthetic":
        logger.info("Using SyntheticCaptureEngine")
        return SyntheticCaptureEngine(**common)

    elif backend == "opencv":
        logger.info(f"Using OpenCVCaptureEngine: device={config.capture.device}")
        return OpenCVCaptureEngine(device=config.capture.device, **common)

    else:
        raise ValueError(f"Unknown capture backend: {backend}")


def create_capture_flags(config: Settings) -> CaptureFlags:
    flags = CaptureFlags.NONE
    if config.capture.raw_stream:
        flags |= CaptureFlags.RAW
    if config.capture.jpeg_colourspace:
        flags |= CaptureFlags.JPEG_COLOURSPACE
    return flags


def create_encoder(config: Settings) -> BaseEncoder:
    """Create the encoder selected in config."""
    codec = config.encoder.codec

    if codec == "mjpeg":
        logger.info(f"Using MJPEGEncoder: quality={config.encoder.quality}")
        return MJPEGEncoder(quality=config.encoder.quality)

    elif codec == "raw":
        logger.info("Using RawEncoder")
        return RawEncoder()

    else:
        raise ValueError(f"Unknown encoder codec: {codec}")


def create_still_writer(config: Settings) -> StillWriter:
    return StillWriter(
        output=config.still.output,
        fmt=config.still.format,
        quality=config.still.quality,
    )


def create_appliance(
    config: Settings,
    control: Optional[ControlSurface] = None,
) -> StreamingAppliance:
    """
    Build the appliance from settings.

    Raises:
        AddressError: If the server address is invalid
    """
    server = BroadcastServer(
        config.server.address,
        write_timeout=config.server.write_timeout_seconds,
        backlog=config.server.backlog,
    )
    return StreamingAppliance(
        capture=create_capture_engine(config),
        encoder=create_encoder(config),
        server=server,
        still_writer=create_still_writer(config),
        control=control,
        wait_timeout_sec=config.server.wait_timeout_seconds,
        poll_interval_sec=config.server.poll_interval_seconds,
        capture_flags=create_capture_flags(config),
    )


# =============================================================================
# Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager with graceful shutdown."""
    global _appliance, _control, _stdin_reader, _previous_signal_handlers
    global _startup_time, _shutdown_flag

    _startup_time = time.time()
    _shutdown_flag = False
    logger.info(f"Starting {settings.app.name} {settings.app.version}")
    logger.info(f"Server address: {settings.server.address}")

    _control = ControlSurface()
    _appliance = create_appliance(settings, _control)

    if settings.control.signals:
        if threading.current_thread() is threading.main_thread():
            _previous_signal_handlers = install_signal_handlers(_control)
        else:
            logger.warning("Not on the main thread, control signals disabled")

    if settings.control.stdin:
        _stdin_reader = StdinCommandReader(_control)
        _stdin_reader.start()

    _appliance.start()
    logger.info("All components started")

    yield

    # Shutdown
    logger.info("Shutting down gracefully...")
    _shutdown_flag = True

    if _previous_signal_handlers:
        restore_signal_handlers(_previous_signal_handlers)
        _previous_signal_handlers = {}

    if _appliance:
        await asyncio.to_thread(_appliance.stop)

    logger.info("Shutdown complete")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="camcast",
    description="Camera-to-network streaming appliance",
    version=settings.app.version,
    lifespan=lifespan,
)


# =============================================================================
# HTTP Endpoints
# =============================================================================

@app.get("/")
async def root() -> JSONResponse:
    """Service information endpoint."""
    return JSONResponse({
        "service": "camcast",
        "version": settings.app.version,
        "name": settings.app.name,
        "status": "running",
        "server_address": settings.server.address,
        "capture_backend": settings.capture.backend,
        "encoder_codec": settings.encoder.codec,
    })


@app.get("/health")
async def health() -> JSONResponse:
    """
    Liveness probe - is the process alive?

    Always returns 200 if the service is running.
    """
    return JSONResponse({
        "status": "healthy",
        "uptime_seconds": round(time.time() - _startup_time, 1),
    })


@app.get("/ready")
async def ready() -> JSONResponse:
    """
    Readiness probe - is the main loop running?

    Returns 503 if not ready.
    """
    if is_ready():
        return JSONResponse({
            "status": "ready",
            "state": _appliance.state.value,
        })
    return JSONResponse({"status": "not_ready"}, status_code=503)


@app.get("/status")
async def status() -> JSONResponse:
    """Stream state, attached clients and loop counters."""
    appliance = get_appliance()
    if appliance is None:
        return JSONResponse({"error": "Appliance not started"}, status_code=503)

    return JSONResponse({
        "uptime_seconds": round(time.time() - _startup_time, 1),
        **appliance.status(),
    })


@app.post("/control/{command}")
async def control(command: str) -> JSONResponse:
    """
    Submit a control command.

    Accepts the same words as stdin ("start", "stop", "capture", ...).
    Unknown commands are ignored and reported as not accepted.
    """
    surface = get_control()
    if surface is None or not is_ready():
        return JSONResponse(
            {"accepted": False, "error": "Appliance not running"},
            status_code=503,
        )

    parsed = parse_command(command)
    if parsed is None:
        logger.info(f"Ignoring unknown control command: {command!r}")
        return JSONResponse({"accepted": False, "command": command})

    surface.submit(parsed)
    return JSONResponse({"accepted": True, "command": parsed.value})


# =============================================================================
# WebSocket Endpoints
# =============================================================================

@app.websocket("/ws/status")
async def status_stream(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time status."""
    await websocket.accept()
    logger.info("Client connected to /ws/status")

    try:
        while not _shutdown_flag:
            appliance = get_appliance()
            if appliance:
                await websocket.send_json(appliance.status())
            await asyncio.sleep(1.0)

    except Exception as e:
        logger.warning(f"WebSocket error: {e}")
    finally:
        logger.info("Client disconnected from /ws/status")


# =============================================================================
# Main Entry Point
# =============================================================================

def main() -> None:
    import uvicorn

    port = int(os.environ.get("PORT", settings.api.port))

    uvicorn.run(
        "camcast.main:app",
        host=settings.api.host,
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    main()
