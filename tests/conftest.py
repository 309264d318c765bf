"""
Shared pytest configuration and fakes.

Shell tests (marked @pytest.mark.shell) need a real bash and a pseudo-terminal
device; they are skipped automatically where those are missing. Integration
tests (marked @pytest.mark.integration) talk to E2B and are skipped unless
E2B_API_KEY is set:

    export E2B_API_KEY=...
    pytest tests/ -m integration -v -s
"""

import asyncio
import json
import os
import shutil
from typing import Dict, List, Optional

import pytest

from sandterm.sandbox.base import (
    ExecutionResult,
    PtyHandle,
    PtySize,
    SandboxHandle,
    SandboxProvider,
)


def _has_shell() -> bool:
    return shutil.which("bash") is not None and os.path.exists("/dev/ptmx")


def pytest_collection_modifyitems(config, items):
    """Skip shell and integration tests when prerequisites are missing."""
    skip_shell = pytest.mark.skip(reason="bash or /dev/ptmx not available")
    skip_integration = pytest.mark.skip(reason="No E2B credentials. Set E2B_API_KEY.")

    has_shell = _has_shell()
    has_creds = bool(os.getenv("E2B_API_KEY"))

    for item in items:
        if "shell" in item.keywords and not has_shell:
            item.add_marker(skip_shell)
        if "integration" in item.keywords and not has_creds:
            item.add_marker(skip_integration)


class FakePty:
    """Scripted terminal: tests push output and decide when it exits."""

    def __init__(self, on_data):
        self.on_data = on_data
        self.sent: List[bytes] = []
        self.exited: asyncio.Future = asyncio.get_running_loop().create_future()

    def emit(self, data: bytes) -> None:
        self.on_data(data)

    def exit(self, code: int) -> None:
        if not self.exited.done():
            self.exited.set_result(code)

    def fail(self, error: Exception) -> None:
        if not self.exited.done():
            self.exited.set_exception(error)


class FakeProvider(SandboxProvider):
    """
    In-memory provider that records every call.

    Knobs:
        fail:            method name -> exception raised by that method
        command_results: command prefix -> ExecutionResult to return
        command_errors:  command prefix -> exception raised for that command
        create_gate:     when set, create_or_attach waits on it
    """

    name = "fake"

    def __init__(self):
        self.calls: List[tuple] = []
        self.files: Dict[str, object] = {}
        self.fail: Dict[str, Exception] = {}
        self.command_results: Dict[str, ExecutionResult] = {}
        self.command_errors: Dict[str, Exception] = {}
        self.create_gate: Optional[asyncio.Event] = None
        self.ptys: List[PtyHandle] = []
        self._counter = 0

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.fail:
            raise self.fail[name]

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def commands(self) -> List[str]:
        return [call[2] for call in self.calls if call[0] == "run_command"]

    def index(self, name: str, prefix: str = "") -> int:
        """Position of the first `name` call whose first string arg starts with prefix."""
        for i, call in enumerate(self.calls):
            if call[0] != name:
                continue
            args = [a for a in call[1:] if isinstance(a, str)]
            if not prefix or any(a.startswith(prefix) for a in args):
                return i
        raise AssertionError(f"no {name} call matching {prefix!r}")

    @property
    def last_pty(self) -> "FakePty":
        return self.ptys[-1].raw

    async def create_or_attach(self, sandbox_id=None, with_storage=False):
        self._record("create_or_attach", sandbox_id, with_storage)
        if self.create_gate is not None:
            await self.create_gate.wait()
        self._counter += 1
        return SandboxHandle(sandbox_id=sandbox_id or f"fake-{self._counter}")

    async def destroy(self, sandbox):
        self._record("destroy", sandbox.sandbox_id)

    async def write_file(self, sandbox, path, content):
        self._record("write_file", path)
        self.files[path] = content

    async def read_file(self, sandbox, path):
        self._record("read_file", path)
        if path not in self.files:
            raise FileNotFoundError(path)
        content = self.files[path]
        return content.decode() if isinstance(content, bytes) else content

    async def run_command(self, sandbox, command, timeout=60):
        self._record("run_command", sandbox.sandbox_id, command)
        for prefix, error in self.command_errors.items():
            if command.startswith(prefix):
                raise error
        for prefix, result in self.command_results.items():
            if command.startswith(prefix):
                return result
        if command.startswith("mountpoint"):
            return ExecutionResult(stdout="MOUNTED\n", stderr="", returncode=0)
        return ExecutionResult(stdout="", stderr="", returncode=0)

    async def create_pty(self, sandbox, size, env, cwd, on_data):
        self._record("create_pty", size, dict(env), cwd)
        handle = PtyHandle(pid=1000 + len(self.ptys), sandbox=sandbox, raw=FakePty(on_data))
        self.ptys.append(handle)
        return handle

    async def send_input(self, pty, data):
        self._record("send_input", data)
        pty.raw.sent.append(data)

    async def resize_pty(self, pty, size: PtySize):
        self._record("resize_pty", size)

    async def kill_pty(self, pty):
        self._record("kill_pty", pty.pid)
        pty.raw.exit(137)

    async def wait_pty(self, pty):
        return await pty.raw.exited


class FakeTransport:
    """Client connection driven by the test: feed() frames in, read .sent out."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[dict] = []
        self.closed = False

    def feed(self, frame) -> None:
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self.incoming.put_nowait(frame)

    def disconnect(self) -> None:
        self.incoming.put_nowait(None)

    def types(self) -> List[str]:
        return [msg["type"] for msg in self.sent]

    async def send(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def receive(self) -> Optional[str]:
        return await self.incoming.get()

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(None)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds, failing after timeout seconds."""

    async def _wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _wait


@pytest.fixture
def transport_factory():
    return FakeTransport
