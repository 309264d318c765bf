"""
sandterm — interactive terminals in remote sandboxes.

Brokers browser terminal sessions against ephemeral sandboxes: each
connection gets its own sandbox and pseudo-terminal, optionally with durable
cloud storage (Cloudflare R2 or Azure Blob) mounted into it over FUSE. The
sandbox is torn down exactly once, whether the client disconnects, the shell
exits, the session idles out, or the server shuts down.

Quick start:
    from sandterm import BrokerConfig, LocalProvider, SessionManager

    async def show(chunk: bytes) -> None:
        print(chunk.decode(errors="replace"), end="")

    async def done(session_exit) -> None:
        print("exited:", session_exit.reason.value)

    manager = SessionManager(LocalProvider(), BrokerConfig(idle_timeout=600))
    session = await manager.create(on_output=show, on_exit=done)
    await session.write("echo hello\\n")
    await session.kill()

Server:
    from sandterm import create_app
    app = create_app(load_config())   # /health and the /terminal WebSocket
"""

from .config import (
    BrokerConfig,
    E2BConfig,
    SandboxType,
    StorageBackend,
    AuthMode,
    R2Storage,
    AzureKeyStorage,
    AzureCliStorage,
    load_config,
)
from .errors import (
    BrokerError,
    ConfigurationError,
    AuthenticationError,
    MountError,
    CreationError,
    TerminalError,
)
from .sandbox import SandboxProvider, LocalProvider, E2BProvider, ExecutionResult, PtySize
from .storage import MountDescriptor, S3FSDescriptor, BlobfuseDescriptor, descriptor_for
from .mount import MountOrchestrator, MountState
from .session import SessionManager, SessionHandle, SessionState, SessionExit, ExitReason
from .relay import TerminalRelay, ConnectionRegistry, ConnectionState
from .server import create_app
from .logging import get_logger, register_secret, setup_logging

__version__ = "0.1.0"

__all__ = [
    # Core
    "SessionManager",
    "SessionHandle",
    "SessionState",
    "SessionExit",
    "ExitReason",
    "TerminalRelay",
    "ConnectionRegistry",
    "ConnectionState",
    "create_app",
    # Config
    "BrokerConfig",
    "E2BConfig",
    "SandboxType",
    "StorageBackend",
    "AuthMode",
    "R2Storage",
    "AzureKeyStorage",
    "AzureCliStorage",
    "load_config",
    # Errors
    "BrokerError",
    "ConfigurationError",
    "AuthenticationError",
    "MountError",
    "CreationError",
    "TerminalError",
    # Sandbox
    "SandboxProvider",
    "LocalProvider",
    "E2BProvider",
    "ExecutionResult",
    "PtySize",
    # Storage
    "MountDescriptor",
    "S3FSDescriptor",
    "BlobfuseDescriptor",
    "descriptor_for",
    "MountOrchestrator",
    "MountState",
    # Logging
    "get_logger",
    "setup_logging",
    "register_secret",
]
