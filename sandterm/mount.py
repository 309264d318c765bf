"""
MountOrchestrator — attaches durable storage to a live sandbox.

Runs what a MountDescriptor describes against a SandboxProvider:
write the credentials, run the mount plan in order, then verify with a
mountpoint probe. One orchestrator serves one session and remembers whether
its sandbox currently has storage mounted.
"""

from dataclasses import dataclass
from typing import Optional

from .config import AuthMode, AzureCliStorage, StorageBackend, StorageConfig
from .errors import AuthenticationError, BrokerError, ConfigurationError, MountError
from .logging import get_logger
from .sandbox.base import SandboxHandle, SandboxProvider
from .storage import BlobfuseDescriptor, MountDescriptor, descriptor_for

logger = get_logger("mount")

# Tail of the backend log attached to mount errors
_LOG_TAIL = 2000


@dataclass
class MountState:
    mounted: bool = False
    backend: Optional[StorageBackend] = None


class MountOrchestrator:
    """Mounts and unmounts one storage backend inside one sandbox."""

    def __init__(self, provider: SandboxProvider):
        self.provider = provider
        self.state = MountState()
        self.descriptor: Optional[MountDescriptor] = None

    async def mount(self, sandbox: SandboxHandle, storage: StorageConfig) -> MountDescriptor:
        """
        Mount storage into the sandbox.

        Args:
            sandbox: Live sandbox to mount into
            storage: Backend settings; every required field must be set

        Returns:
            The descriptor that was mounted (for its mount point and label)

        Raises:
            ConfigurationError: required credential fields are empty. Nothing
                has been run in the sandbox at that point.
            AuthenticationError: delegated identity is unusable in the sandbox
            MountError: a plan command failed or verification disagreed
        """
        missing = storage.missing_fields()
        if missing:
            raise ConfigurationError(
                f"{storage.backend.value} storage configuration incomplete. "
                f"Missing: {', '.join(missing)}"
            )

        descriptor = descriptor_for(storage.backend)
        extra = {"sandbox_id": sandbox.sandbox_id, "backend": storage.backend.value}

        try:
            if storage.auth_mode == AuthMode.CLI:
                await self._prepare_delegated_identity(sandbox, storage, descriptor)

            logger.info(f"Mounting {descriptor.label}...", extra=extra)
            await self.provider.write_file(
                sandbox, descriptor.credentials_path, descriptor.credentials_payload(storage)
            )

            for command in descriptor.mount_plan(storage):
                result = await self.provider.run_command(sandbox, command)
                if not result.ok:
                    message = f"Command failed: {command}\nstderr: {result.stderr.strip()}"
                    raise MountError(await self._with_logs(sandbox, descriptor, message))

            logger.info("Verifying mount...", extra=extra)
            probe = await self.provider.run_command(sandbox, descriptor.verify_command())
            if not probe.ok or not descriptor.verify_passed(probe.stdout):
                message = await self._with_logs(
                    sandbox, descriptor, "Mount verification failed"
                )
                await self._run_unmount(sandbox, descriptor)
                raise MountError(message)

        except BrokerError as e:
            logger.error(f"Error mounting {descriptor.label}: {e}", extra=extra)
            raise
        except Exception as e:
            logger.error(f"Error mounting {descriptor.label}: {e}", extra=extra, exc_info=True)
            message = await self._with_logs(
                sandbox, descriptor, f"{descriptor.label} mount failed: {e}"
            )
            raise MountError(message) from e

        self.state = MountState(mounted=True, backend=storage.backend)
        self.descriptor = descriptor
        logger.info(f"{descriptor.label} mounted at {descriptor.mount_point}", extra=extra)
        return descriptor

    async def unmount(self, sandbox: Optional[SandboxHandle]) -> None:
        """Unmount if mounted. Never raises; state is always reset."""
        descriptor = self.descriptor
        try:
            if sandbox is not None and descriptor is not None and self.state.mounted:
                logger.info(
                    f"Unmounting {descriptor.label}...",
                    extra={"sandbox_id": sandbox.sandbox_id},
                )
                await self._run_unmount(sandbox, descriptor)
        finally:
            self.state = MountState()
            self.descriptor = None

    async def _run_unmount(self, sandbox: SandboxHandle, descriptor: MountDescriptor) -> None:
        command = descriptor.unmount_command()
        try:
            result = await self.provider.run_command(sandbox, command)
        except Exception as e:
            logger.error(
                f"Error unmounting {descriptor.label}: {e}",
                extra={"sandbox_id": sandbox.sandbox_id},
                exc_info=True,
            )
            return
        if result.ok:
            logger.info(f"{descriptor.label} unmounted", extra={"sandbox_id": sandbox.sandbox_id})
        else:
            logger.warning(
                f"Unmount command failed ({command}): {result.stderr.strip()}",
                extra={"sandbox_id": sandbox.sandbox_id},
            )

    async def _prepare_delegated_identity(
        self,
        sandbox: SandboxHandle,
        storage: AzureCliStorage,
        descriptor: BlobfuseDescriptor,
    ) -> None:
        """Copy the host's Azure CLI login into the sandbox and check it works."""
        logger.info("Copying Azure CLI credentials to sandbox...", extra={"sandbox_id": sandbox.sandbox_id})

        copied = 0
        for filename in descriptor.cli_artifacts:
            source = storage.credentials_dir / filename
            try:
                content = source.read_bytes()
            except OSError:
                logger.info(f"Skipping {filename} (not found or inaccessible)")
                continue
            try:
                await self.provider.write_file(
                    sandbox, f"{descriptor.cli_config_dir}/{filename}", content
                )
            except Exception as e:
                raise AuthenticationError(
                    "Failed to copy Azure CLI credentials into the sandbox.\n"
                    f"Error: {e}"
                ) from e
            copied += 1
            logger.debug(f"Copied {filename} to sandbox")

        if not copied:
            logger.warning(
                f"No Azure CLI credentials found in {storage.credentials_dir}. "
                'Run "az login" on the host machine.'
            )

        logger.info("Validating Azure CLI authentication...", extra={"sandbox_id": sandbox.sandbox_id})
        which = await self.provider.run_command(sandbox, "which az")
        if not which.ok:
            raise AuthenticationError(
                "Azure CLI is not installed in the sandbox. "
                "Use a sandbox template that includes the Azure CLI."
            )

        account = await self.provider.run_command(sandbox, "az account show")
        if not account.ok:
            raise AuthenticationError(
                'Azure CLI authentication required. Run "az login" on the host '
                "machine before starting a session.\n"
                f"Error: {account.stderr.strip()}"
            )
        logger.info("Azure CLI authentication validated")

    async def _with_logs(
        self, sandbox: SandboxHandle, descriptor: MountDescriptor, message: str
    ) -> str:
        try:
            logs = await self.provider.read_file(sandbox, descriptor.log_path)
        except Exception:
            return message
        logs = logs.strip()
        if logs:
            message += f"\nLogs: {logs[-_LOG_TAIL:]}"
        return message
