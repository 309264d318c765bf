"""
Abstract provider interface for remote terminal sandboxes.

A provider creates, attaches to and destroys sandboxes, and exposes the
three capabilities the session layer needs inside one: writing files,
running commands, and driving an interactive pseudo-terminal.

Two implementations:
- LocalProvider: sandboxes are directories on the host (no isolation, fast)
- E2BProvider: sandboxes are E2B cloud microVMs (isolated, remote)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

# Receives raw PTY output chunks in the order the terminal produced them
DataCallback = Callable[[bytes], None]


@dataclass
class ExecutionResult:
    """Result of executing a command in a sandbox."""
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class PtySize:
    cols: int = 80
    rows: int = 24


@dataclass
class SandboxHandle:
    """Opaque reference to one live sandbox."""
    sandbox_id: str
    raw: Any = None


@dataclass
class PtyHandle:
    """Opaque reference to one interactive process inside a sandbox."""
    pid: int
    sandbox: SandboxHandle
    raw: Any = None


class SandboxProvider(ABC):
    """
    Abstract base for sandbox providers.

    Every method is a coroutine. Non-zero command exits are returned as
    ExecutionResult values; exceptions mean the provider itself failed.
    """

    name = "provider"

    @abstractmethod
    async def create_or_attach(
        self, sandbox_id: Optional[str] = None, with_storage: bool = False
    ) -> SandboxHandle:
        """
        Attach to sandbox_id if given, otherwise provision a new sandbox.

        Args:
            sandbox_id: Existing sandbox to attach to
            with_storage: Provision an image that carries the FUSE mount tools
        """
        ...

    @abstractmethod
    async def destroy(self, sandbox: SandboxHandle) -> None:
        """Destroy the sandbox and everything in it."""
        ...

    @abstractmethod
    async def write_file(
        self, sandbox: SandboxHandle, path: str, content: Union[str, bytes]
    ) -> None:
        ...

    @abstractmethod
    async def read_file(self, sandbox: SandboxHandle, path: str) -> str:
        ...

    @abstractmethod
    async def run_command(
        self, sandbox: SandboxHandle, command: str, timeout: int = 60
    ) -> ExecutionResult:
        """
        Execute a shell command inside the sandbox.

        Args:
            sandbox: Target sandbox
            command: Shell command to run
            timeout: Max seconds to wait

        Returns:
            ExecutionResult with stdout, stderr, returncode
        """
        ...

    @abstractmethod
    async def create_pty(
        self,
        sandbox: SandboxHandle,
        size: PtySize,
        env: Dict[str, str],
        cwd: str,
        on_data: DataCallback,
    ) -> PtyHandle:
        """Start an interactive shell; every output chunk is passed to on_data."""
        ...

    @abstractmethod
    async def send_input(self, pty: PtyHandle, data: bytes) -> None:
        ...

    @abstractmethod
    async def resize_pty(self, pty: PtyHandle, size: PtySize) -> None:
        ...

    @abstractmethod
    async def kill_pty(self, pty: PtyHandle) -> None:
        ...

    @abstractmethod
    async def wait_pty(self, pty: PtyHandle) -> int:
        """Wait for the terminal process to end and return its exit code."""
        ...
