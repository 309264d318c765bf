"""
E2B sandbox provider — isolated cloud microVMs driven over the E2B API.

Each session gets its own sandbox. Sandboxes are created from a template;
when cloud storage is enabled the storage template (which ships s3fs and
blobfuse2) is used instead. An existing sandbox can be reattached by id.
"""

from typing import Dict, Optional, Union

from e2b import AsyncSandbox, CommandExitException
from e2b import PtySize as E2BPtySize

from .base import (
    DataCallback,
    ExecutionResult,
    PtyHandle,
    PtySize,
    SandboxHandle,
    SandboxProvider,
)
from ..config import E2BConfig
from ..logging import get_logger

logger = get_logger("sandbox.e2b")


class E2BProvider(SandboxProvider):
    """Runs sessions inside E2B cloud sandboxes."""

    name = "e2b"

    def __init__(self, config: Optional[E2BConfig] = None):
        self.config = config or E2BConfig()

    async def create_or_attach(
        self, sandbox_id: Optional[str] = None, with_storage: bool = False
    ) -> SandboxHandle:
        if sandbox_id:
            logger.info(f"Connecting to existing sandbox: {sandbox_id}")
            raw = await AsyncSandbox.connect(sandbox_id, api_key=self.config.api_key)
            logger.info("Connected to sandbox", extra={"sandbox_id": raw.sandbox_id})
            return SandboxHandle(sandbox_id=raw.sandbox_id, raw=raw)

        template = self.config.template
        if with_storage and self.config.storage_template:
            template = self.config.storage_template

        raw = await AsyncSandbox.create(
            template=template,
            api_key=self.config.api_key,
            timeout=self.config.sandbox_timeout,
        )
        logger.info(
            f"Sandbox created (template={template}). "
            f"To reuse it, set E2B_SANDBOX_ID={raw.sandbox_id}",
            extra={"sandbox_id": raw.sandbox_id},
        )
        return SandboxHandle(sandbox_id=raw.sandbox_id, raw=raw)

    async def destroy(self, sandbox: SandboxHandle) -> None:
        logger.info("Killing sandbox", extra={"sandbox_id": sandbox.sandbox_id})
        await sandbox.raw.kill()

    async def write_file(
        self, sandbox: SandboxHandle, path: str, content: Union[str, bytes]
    ) -> None:
        await sandbox.raw.files.write(path, content)

    async def read_file(self, sandbox: SandboxHandle, path: str) -> str:
        return await sandbox.raw.files.read(path)

    async def run_command(
        self, sandbox: SandboxHandle, command: str, timeout: int = 60
    ) -> ExecutionResult:
        try:
            result = await sandbox.raw.commands.run(command, timeout=timeout)
        except CommandExitException as e:
            # The SDK raises on non-zero exits; callers expect a result
            return ExecutionResult(
                stdout=e.stdout or "",
                stderr=e.stderr or "",
                returncode=e.exit_code,
            )
        return ExecutionResult(
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            returncode=result.exit_code,
        )

    async def create_pty(
        self,
        sandbox: SandboxHandle,
        size: PtySize,
        env: Dict[str, str],
        cwd: str,
        on_data: DataCallback,
    ) -> PtyHandle:
        handle = await sandbox.raw.pty.create(
            size=E2BPtySize(rows=size.rows, cols=size.cols),
            on_data=on_data,
            envs=env,
            cwd=cwd,
            timeout=0,  # interactive shells run until closed
        )
        return PtyHandle(pid=handle.pid, sandbox=sandbox, raw=handle)

    async def send_input(self, pty: PtyHandle, data: bytes) -> None:
        await pty.sandbox.raw.pty.send_stdin(pty.pid, data)

    async def resize_pty(self, pty: PtyHandle, size: PtySize) -> None:
        await pty.sandbox.raw.pty.resize(
            pty.pid, E2BPtySize(rows=size.rows, cols=size.cols)
        )

    async def kill_pty(self, pty: PtyHandle) -> None:
        await pty.sandbox.raw.pty.kill(pty.pid)

    async def wait_pty(self, pty: PtyHandle) -> int:
        try:
            result = await pty.raw.wait()
        except CommandExitException as e:
            return e.exit_code
        return result.exit_code or 0
