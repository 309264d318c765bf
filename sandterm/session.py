"""
Terminal session — owns one sandbox and one pseudo-terminal for a client.

SessionManager.create() acquires a sandbox, mounts storage when enabled,
writes the shell init script, starts the PTY and arms the idle timer.
Output flows from the PTY through a queue to the consumer; the process exit
(or an idle timeout, or a watcher failure) is queued behind it so the
consumer always sees every output chunk before the exit notification.

Teardown is idempotent: whichever of kill(), process exit, idle timeout or
creation failure gets there first does the work, the rest are no-ops.
"""

import asyncio
import shlex
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Union

from .config import BrokerConfig
from .errors import BrokerError, ConfigurationError, CreationError
from .logging import get_logger
from .mount import MountOrchestrator
from .sandbox.base import PtyHandle, PtySize, SandboxHandle, SandboxProvider
from .storage import MountDescriptor
from .timer import IdleTimer

logger = get_logger("session")

HOME_DIR = "/home/user"
INIT_SCRIPT_PATH = f"{HOME_DIR}/.bashrc"
DEFAULT_SIZE = PtySize(cols=80, rows=24)
PROMPT = r"\[\033[01;32m\]\u@sandbox\[\033[00m\]:\[\033[01;34m\]\w\[\033[00m\]\$ "


class SessionState(str, Enum):
    IDLE = "idle"
    CREATING = "creating"
    MOUNTING_STORAGE = "mounting_storage"
    READY = "ready"
    TERMINATING = "terminating"
    DESTROYED = "destroyed"


class ExitReason(str, Enum):
    PROCESS_EXIT = "process_exit"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass
class SessionExit:
    """Why and how a session ended. code is None for timeouts."""
    code: Optional[int]
    reason: ExitReason
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {"code": self.code, "reason": self.reason.value, "detail": self.detail}


OutputSink = Callable[[bytes], Awaitable[None]]
ExitSink = Callable[[SessionExit], Awaitable[None]]


def build_init_script(
    env: Dict[str, str],
    workdir: Optional[str],
    banner: List[str],
    storage_line: str,
) -> str:
    """
    Shell script sourced by the interactive shell on startup.

    Exports the session environment, sets the prompt, moves into workdir
    (home when None) and prints the welcome banner.
    """
    lines = []
    for key, value in env.items():
        if not key.isidentifier():
            raise ConfigurationError(f"Invalid environment variable name: {key!r}")
        lines.append(f"export {key}={shlex.quote(value)}")
    lines.append(f"export PS1={shlex.quote(PROMPT)}")
    lines.append(f"cd {shlex.quote(workdir)}" if workdir else "cd ~")
    lines.append("clear")
    lines.extend(f"echo {shlex.quote(line)}" for line in banner)
    lines.append(f"echo {shlex.quote(storage_line)}")
    lines.append('echo ""')
    return "\n".join(lines) + "\n"


class SessionHandle:
    """What create() hands back: the live controls of one session."""

    def __init__(self, manager: "SessionManager"):
        self._manager = manager

    @property
    def sandbox_id(self) -> Optional[str]:
        return self._manager.sandbox_id

    async def write(self, data: Union[str, bytes]) -> None:
        await self._manager.write(data)

    async def resize(self, cols: int, rows: int) -> None:
        await self._manager.resize(cols, rows)

    async def kill(self) -> None:
        await self._manager.kill()


class SessionManager:
    """
    Lifecycle of one terminal session.

    States: idle -> creating -> mounting_storage (optional) -> ready
    -> terminating -> destroyed. A failed create goes straight to destroyed.
    A manager is single use.
    """

    def __init__(
        self,
        provider: SandboxProvider,
        config: Optional[BrokerConfig] = None,
        connection_id: Optional[str] = None,
    ):
        self.provider = provider
        self.config = config or BrokerConfig()
        self.connection_id = connection_id
        self.state = SessionState.IDLE
        self.mounts = MountOrchestrator(provider)

        self._sandbox: Optional[SandboxHandle] = None
        self._pty: Optional[PtyHandle] = None
        self._timer = IdleTimer(self.config.idle_timeout, self._on_idle)
        self._channel: asyncio.Queue = asyncio.Queue()
        self._on_output: Optional[OutputSink] = None
        self._on_exit: Optional[ExitSink] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None

        self._closing = False
        self._exit_signalled = False
        self._created = asyncio.Event()
        self._teardown_lock = asyncio.Lock()

    @property
    def sandbox_id(self) -> Optional[str]:
        return self._sandbox.sandbox_id if self._sandbox else None

    @property
    def is_live(self) -> bool:
        return (
            self.state is SessionState.READY
            and not self._closing
            and self._sandbox is not None
            and self._pty is not None
        )

    def _extra(self, **kwargs) -> dict:
        extra = {"connection_id": self.connection_id, "sandbox_id": self.sandbox_id}
        extra.update(kwargs)
        return extra

    async def create(self, on_output: OutputSink, on_exit: ExitSink) -> SessionHandle:
        """
        Bring the session up.

        Args:
            on_output: Receives every PTY output chunk, in order
            on_exit: Called once when the process exits, the idle timer fires,
                or the terminal fails. Not called for kill().

        Returns:
            SessionHandle exposing write/resize/kill

        Raises:
            CreationError: sandbox or PTY could not be started, or kill()
                was called while creation was in progress
            ConfigurationError, AuthenticationError, MountError: storage
                could not be attached
        """
        if self.state is not SessionState.IDLE:
            raise CreationError(f"Session cannot be created from state {self.state.value}")

        self.state = SessionState.CREATING
        self._on_output = on_output
        self._on_exit = on_exit
        storage = self.config.active_storage

        try:
            self._sandbox = await self._acquire_sandbox(with_storage=storage is not None)
            self._ensure_open()

            descriptor: Optional[MountDescriptor] = None
            if storage is not None:
                self.state = SessionState.MOUNTING_STORAGE
                descriptor = await self.mounts.mount(self._sandbox, storage)
                self._ensure_open()

            workdir = descriptor.mount_point if descriptor else None
            await self.provider.write_file(
                self._sandbox, INIT_SCRIPT_PATH, self._init_script(descriptor)
            )
            self._ensure_open()

            self._pump_task = asyncio.create_task(self._pump())
            env = {"TERM": "xterm-256color", **self.config.session_env}
            self._pty = await self.provider.create_pty(
                self._sandbox, DEFAULT_SIZE, env, workdir or HOME_DIR, self._channel.put_nowait
            )
            self._ensure_open()

            self._timer.start()
            self._watch_task = asyncio.create_task(self._watch(self._pty))
            self.state = SessionState.READY
        except BrokerError as e:
            logger.error(f"Session creation failed: {e}", extra=self._extra())
            await self._teardown()
            raise
        except asyncio.CancelledError:
            await self._teardown()
            raise
        except Exception as e:
            logger.error(f"Error creating session: {e}", extra=self._extra(), exc_info=True)
            await self._teardown()
            raise CreationError(str(e)) from e
        finally:
            self._created.set()

        logger.info(f"PTY started (pid={self._pty.pid})", extra=self._extra())
        return SessionHandle(self)

    async def _acquire_sandbox(self, with_storage: bool) -> SandboxHandle:
        try:
            return await self.provider.create_or_attach(
                sandbox_id=self.config.sandbox_id, with_storage=with_storage
            )
        except Exception as e:
            raise CreationError(f"Could not provision sandbox: {e}") from e

    def _ensure_open(self) -> None:
        if self._closing:
            raise CreationError("Session was closed during creation")

    def _init_script(self, descriptor: Optional[MountDescriptor]) -> str:
        if descriptor is not None:
            storage_line = f"{descriptor.label} mounted at {descriptor.mount_point}"
        else:
            storage_line = "Note: Cloud storage disabled - files will not persist"
        return build_init_script(
            self.config.session_env,
            descriptor.mount_point if descriptor else None,
            self.config.welcome_banner,
            storage_line,
        )

    async def write(self, data: Union[str, bytes]) -> None:
        """Send keystrokes to the terminal. Ignored unless the session is live."""
        if not self.is_live:
            return
        self._timer.reset()
        if isinstance(data, str):
            data = data.encode(errors="replace")
        try:
            await self.provider.send_input(self._pty, data)
        except Exception as e:
            logger.error(f"Terminal write failed: {e}", extra=self._extra(), exc_info=True)
            self._signal_exit(SessionExit(code=1, reason=ExitReason.ERROR, detail=str(e)))

    async def resize(self, cols: int, rows: int) -> None:
        """Change the terminal geometry. Ignored unless the session is live."""
        if not self.is_live:
            return
        logger.info(f"Terminal resize: {cols}x{rows}", extra=self._extra())
        try:
            await self.provider.resize_pty(self._pty, PtySize(cols=cols, rows=rows))
        except Exception as e:
            logger.warning(f"Terminal resize failed: {e}", extra=self._extra())

    async def kill(self) -> None:
        """Tear the session down. Safe to call any number of times, from anywhere."""
        self._closing = True
        if self.state in (SessionState.CREATING, SessionState.MOUNTING_STORAGE):
            # create() notices _closing at its next step and cleans up itself
            await self._created.wait()
        await self._teardown()

    def _on_idle(self) -> None:
        logger.info(
            f"Sandbox idle for {self.config.idle_timeout}s - cleaning up",
            extra=self._extra(),
        )
        self._signal_exit(SessionExit(code=None, reason=ExitReason.TIMEOUT))

    def _signal_exit(self, session_exit: SessionExit) -> None:
        if self._closing or self._exit_signalled:
            return
        self._exit_signalled = True
        self._timer.cancel()
        self._channel.put_nowait(session_exit)

    async def _watch(self, pty: PtyHandle) -> None:
        try:
            code = await self.provider.wait_pty(pty)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"PTY error: {e}", extra=self._extra(), exc_info=True)
            self._signal_exit(SessionExit(code=1, reason=ExitReason.ERROR, detail=str(e)))
            return
        logger.info("PTY exited", extra=self._extra(exit_code=code))
        self._signal_exit(SessionExit(code=code, reason=ExitReason.PROCESS_EXIT))

    async def _pump(self) -> None:
        """Deliver queued output in order, then the exit notification, then tear down."""
        while True:
            item = await self._channel.get()
            if isinstance(item, SessionExit):
                break
            try:
                await self._on_output(item)
            except Exception as e:
                logger.warning(f"Output delivery failed: {e}", extra=self._extra())

        try:
            await self._on_exit(item)
        except Exception as e:
            logger.warning(f"Exit notification failed: {e}", extra=self._extra())
        finally:
            await self._teardown()

    async def _teardown(self) -> None:
        async with self._teardown_lock:
            if self.state is SessionState.DESTROYED:
                return
            self._closing = True
            self.state = SessionState.TERMINATING
            start = time.monotonic()
            extra = self._extra()

            self._timer.cancel()

            if self._pty is not None:
                try:
                    await self.provider.kill_pty(self._pty)
                except Exception as e:
                    logger.warning(f"Error killing PTY: {e}", extra=extra)

            if self.mounts.state.mounted:
                await self.mounts.unmount(self._sandbox)

            if self._sandbox is not None:
                try:
                    await self.provider.destroy(self._sandbox)
                except Exception as e:
                    logger.error(f"Error destroying sandbox: {e}", extra=extra, exc_info=True)

            self._pty = None
            self._sandbox = None

            current = asyncio.current_task()
            for task in (self._watch_task, self._pump_task):
                if task is not None and task is not current and not task.done():
                    task.cancel()
            self._watch_task = None
            self._pump_task = None

            self.state = SessionState.DESTROYED
            extra["duration"] = round(time.monotonic() - start, 3)
            logger.info("Session torn down", extra=extra)
