"""
HTTP host process for the terminal broker.

Serves a health endpoint and the /terminal WebSocket. Each WebSocket is
handed to the TerminalRelay; on shutdown every live session is torn down
within the configured grace period.

Run:
    sandterm            # reads .env / environment, serves on $PORT
"""

import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.websockets import WebSocket, WebSocketState

from .config import BrokerConfig, SandboxType, describe, load_config, secret_values
from .errors import ConfigurationError
from .logging import get_logger, setup_logging
from .relay import TerminalRelay
from .sandbox import E2BProvider, LocalProvider, SandboxProvider
from .session import SessionManager

logger = get_logger("server")


class WebSocketTransport:
    """Adapts a FastAPI WebSocket to the relay's Transport protocol."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, text: str) -> None:
        await self.websocket.send_text(text)

    async def receive(self) -> Optional[str]:
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            return None
        if message.get("text") is not None:
            return message["text"]
        return (message.get("bytes") or b"").decode("utf-8", errors="replace")

    async def close(self) -> None:
        if self.websocket.client_state == WebSocketState.CONNECTED:
            await self.websocket.close()


def build_provider(config: BrokerConfig) -> SandboxProvider:
    if config.sandbox == SandboxType.E2B:
        return E2BProvider(config.e2b)
    return LocalProvider(base_dir=config.local_root)


def create_app(
    config: Optional[BrokerConfig] = None,
    provider: Optional[SandboxProvider] = None,
    relay: Optional[TerminalRelay] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Broker settings (defaults to BrokerConfig())
        provider: Sandbox provider (built from config when omitted)
        relay: Relay to serve connections with (built from provider when omitted)
    """
    config = config or BrokerConfig()
    if relay is None:
        provider = provider or build_provider(config)
        relay = TerminalRelay(
            lambda connection_id: SessionManager(provider, config, connection_id)
        )
    started = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutdown signal received, cleaning up...")
        await relay.shutdown(grace=config.shutdown_grace)

    app = FastAPI(title="sandterm", lifespan=lifespan)
    app.state.config = config
    app.state.relay = relay
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - started, 3),
            "sessions": len(relay.registry),
        }

    @app.websocket("/terminal")
    async def terminal(websocket: WebSocket) -> None:
        await websocket.accept()
        await relay.handle_connection(WebSocketTransport(websocket))

    return app


def main() -> None:
    try:
        config = load_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        raise SystemExit(1)

    setup_logging(
        level=config.log_level, log_file=config.log_file, secrets=secret_values(config)
    )
    logger.info(f"Configuration loaded: {describe(config)}")

    app = create_app(config)
    logger.info(f"Backend server running on port {config.port}")
    logger.info(f"WebSocket endpoint: ws://localhost:{config.port}/terminal")
    logger.info(f"CORS enabled for: {config.frontend_url}")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        timeout_graceful_shutdown=int(config.shutdown_grace),
    )


if __name__ == "__main__":
    main()
