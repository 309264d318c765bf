"""
Local provider — each sandbox is a directory on the host.

No isolation. Fast. Good for development and for exercising the session
layer without cloud credentials. Sandbox-absolute paths such as
/home/user/.bashrc are mapped inside the sandbox directory, and the terminal
is a real interactive shell on a host pseudo-terminal whose HOME is the
sandbox home, so the session's init script is sourced on startup. Commands
run on the host, so cloud storage mounts are refused.
"""

import asyncio
import fcntl
import os
import pty
import shutil
import signal
import struct
import tempfile
import termios
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union
from uuid import uuid4

from .base import (
    DataCallback,
    ExecutionResult,
    PtyHandle,
    PtySize,
    SandboxHandle,
    SandboxProvider,
)
from ..errors import ConfigurationError, TerminalError
from ..logging import get_logger
from ..security import resolve_sandbox_path, validate_sandbox_root

logger = get_logger("sandbox.local")

HOME = "/home/user"


@dataclass
class _LocalPty:
    process: asyncio.subprocess.Process
    master_fd: int
    drained: asyncio.Event
    closed: bool = False


def _set_winsize(fd: int, size: PtySize) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", size.rows, size.cols, 0, 0))


def _take_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the pty slave
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class LocalProvider(SandboxProvider):
    """Runs sessions in per-sandbox directories on the host machine."""

    name = "local"

    def __init__(self, base_dir: Optional[Path] = None, shell: str = "/bin/bash"):
        self.base_dir = Path(base_dir) if base_dir else Path(
            tempfile.mkdtemp(prefix="sandterm-")
        )
        if not validate_sandbox_root(self.base_dir):
            raise ValueError(f"Sandbox root rejected by security validation: {self.base_dir}")
        self.shell = shell

    def root(self, sandbox: SandboxHandle) -> Path:
        return self.base_dir / sandbox.sandbox_id

    def home(self, sandbox: SandboxHandle) -> Path:
        return resolve_sandbox_path(self.root(sandbox), HOME)

    async def create_or_attach(
        self, sandbox_id: Optional[str] = None, with_storage: bool = False
    ) -> SandboxHandle:
        if with_storage:
            # mount plans use sandbox-absolute paths that would land on the host
            raise ConfigurationError("The local provider does not support cloud storage mounts")
        if sandbox_id:
            handle = SandboxHandle(sandbox_id=sandbox_id)
            if not self.root(handle).is_dir():
                raise LookupError(f"Unknown sandbox id: {sandbox_id}")
            logger.info("Attached to local sandbox", extra={"sandbox_id": sandbox_id})
            return handle

        handle = SandboxHandle(sandbox_id=f"local-{uuid4().hex[:8]}")
        self.home(handle).mkdir(parents=True, exist_ok=False)
        logger.info(f"Local sandbox created: {self.root(handle)}", extra={"sandbox_id": handle.sandbox_id})
        return handle

    async def destroy(self, sandbox: SandboxHandle) -> None:
        shutil.rmtree(self.root(sandbox), ignore_errors=True)
        logger.info("Local sandbox removed", extra={"sandbox_id": sandbox.sandbox_id})

    async def write_file(
        self, sandbox: SandboxHandle, path: str, content: Union[str, bytes]
    ) -> None:
        target = resolve_sandbox_path(self.root(sandbox), path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            content = content.encode()
        target.write_bytes(content)

    async def read_file(self, sandbox: SandboxHandle, path: str) -> str:
        target = resolve_sandbox_path(self.root(sandbox), path)
        return target.read_text(errors="replace")

    def _env(self, sandbox: SandboxHandle, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = os.environ.copy()
        env["HOME"] = str(self.home(sandbox))
        if extra:
            env.update(extra)
        return env

    async def run_command(
        self, sandbox: SandboxHandle, command: str, timeout: int = 60
    ) -> ExecutionResult:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.home(sandbox)),
            env=self._env(sandbox),
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            return ExecutionResult(stdout="", stderr="Timed out", returncode=-1)
        return ExecutionResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            returncode=process.returncode or 0,
        )

    async def create_pty(
        self,
        sandbox: SandboxHandle,
        size: PtySize,
        env: Dict[str, str],
        cwd: str,
        on_data: DataCallback,
    ) -> PtyHandle:
        workdir = resolve_sandbox_path(self.root(sandbox), cwd)
        if not workdir.is_dir():
            workdir = self.home(sandbox)

        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(master_fd, size)
            process = await asyncio.create_subprocess_exec(
                self.shell, "-i",
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(workdir),
                env=self._env(sandbox, env),
                start_new_session=True,
                preexec_fn=_take_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        loop = asyncio.get_running_loop()
        drained = asyncio.Event()

        def _on_readable() -> None:
            try:
                data = os.read(master_fd, 65536)
            except OSError:
                # EIO once the last slave descriptor is gone
                data = b""
            if not data:
                loop.remove_reader(master_fd)
                drained.set()
                return
            on_data(data)

        loop.add_reader(master_fd, _on_readable)
        local = _LocalPty(process=process, master_fd=master_fd, drained=drained)
        logger.info(f"Local PTY started (pid={process.pid})", extra={"sandbox_id": sandbox.sandbox_id})
        return PtyHandle(pid=process.pid, sandbox=sandbox, raw=local)

    async def send_input(self, pty: PtyHandle, data: bytes) -> None:
        local: _LocalPty = pty.raw
        if local.closed:
            raise TerminalError("PTY is closed")
        os.write(local.master_fd, data)

    async def resize_pty(self, pty: PtyHandle, size: PtySize) -> None:
        local: _LocalPty = pty.raw
        if not local.closed:
            _set_winsize(local.master_fd, size)

    async def kill_pty(self, pty: PtyHandle) -> None:
        local: _LocalPty = pty.raw
        if local.process.returncode is None:
            try:
                # Interactive shells ignore SIGTERM; take down the whole group
                os.killpg(local.process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await local.process.wait()
        self._close(local)

    async def wait_pty(self, pty: PtyHandle) -> int:
        local: _LocalPty = pty.raw
        code = await local.process.wait()
        try:
            await asyncio.wait_for(local.drained.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            pass
        self._close(local)
        return code

    def _close(self, local: _LocalPty) -> None:
        if local.closed:
            return
        local.closed = True
        asyncio.get_running_loop().remove_reader(local.master_fd)
        os.close(local.master_fd)
