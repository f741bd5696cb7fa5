import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from constants import ALLOWED_ORIGINS, HEALTH_MESSAGE, LOG_FILE, LOG_LEVEL, NOTIFY_SIGNAL_ERRORS
from logging_config import get_logger, setup_logging
from routers.rooms import rooms_router
from signaling import InvalidMessageError, Outbound, SignalingCore

setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def origin_allowed(origin: Optional[str], allowed_origins: List[str]) -> bool:
    # Non-browser clients send no Origin header
    if not origin or "*" in allowed_origins:
        return True
    return origin in allowed_origins


async def deliver(connections: Dict[str, WebSocket], effects: List[Outbound]):
    """Send each effect to its connection. Failed sends are logged and otherwise ignored."""
    send_tasks = []
    targets = []
    for effect in effects:
        websocket = connections.get(effect.connection_id)
        if websocket is None:
            logger.debug(f"Connection {effect.connection_id} is gone, dropping {effect.event}")
            continue
        send_tasks.append(websocket.send_text(effect.to_text()))
        targets.append(effect)

    if not send_tasks:
        return
    results = await asyncio.gather(*send_tasks, return_exceptions=True)
    for effect, result in zip(targets, results):
        if isinstance(result, Exception):
            logger.warning(f"Error sending {effect.event} to connection {effect.connection_id}: {result}")
        else:
            logger.debug(f"Sent {effect.event} to connection {effect.connection_id}")


def create_app(
    allowed_origins: Optional[List[str]] = None,
    notify_signal_errors: Optional[bool] = None,
) -> FastAPI:
    allowed_origins = list(ALLOWED_ORIGINS if allowed_origins is None else allowed_origins)
    if notify_signal_errors is None:
        notify_signal_errors = NOTIFY_SIGNAL_ERRORS

    # Transport-side table: connection_id -> websocket
    connections: Dict[str, WebSocket] = {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Signaling server starting, allowed origins: {allowed_origins}")
        yield
        # uvicorn closes sockets before lifespan shutdown; this covers hosts that keep them open
        logger.info(f"Shutting down server, closing {len(connections)} open connections...")
        for connection_id, websocket in list(connections.items()):
            try:
                await websocket.close(code=1001, reason="Server shutting down")
            except Exception as e:
                logger.debug(f"Error closing connection {connection_id}: {e}")
        connections.clear()
        logger.info("WebSocket server closed.")

    app = FastAPI(title="Signaling Relay", lifespan=lifespan)
    app.state.signaling = SignalingCore(notify_signal_errors=notify_signal_errors)
    app.state.connections = connections

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)

    @app.get("/", response_class=PlainTextResponse)
    async def health():
        return HEALTH_MESSAGE

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Signaling channel. One connection per client, JSON frames `{"event": ..., "data": ...}`."""
        origin = websocket.headers.get("origin")
        if not origin_allowed(origin, allowed_origins):
            logger.warning(f"WebSocket connection rejected: origin {origin} not allowed")
            await websocket.close(code=1008, reason="Not allowed by CORS")
            return

        signaling: SignalingCore = app.state.signaling
        connection_id = str(uuid.uuid4())

        await websocket.accept()
        connections[connection_id] = websocket
        signaling.connect(connection_id)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))

                data = message.get("text")
                try:
                    if data is None:
                        raise InvalidMessageError("Binary frames are not supported, send JSON text")
                    logger.debug(f"Received frame from connection {connection_id}: {data[:120]}")
                    effects = signaling.dispatch(connection_id, data)
                except InvalidMessageError as e:
                    logger.warning(f"Rejected frame from connection {connection_id}: {e.message}")
                    effects = [e.to_outbound(connection_id)]
                await deliver(connections, effects)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for connection {connection_id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
            try:
                await websocket.close(code=1011)
            except Exception as close_error:
                logger.debug(f"Error closing WebSocket: {close_error}")
        finally:
            connections.pop(connection_id, None)
            await deliver(connections, signaling.disconnect(connection_id))

    logger.info("FastAPI application initialized")
    return app


app = create_app()
