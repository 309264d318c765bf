"""
Storage mount descriptors.

A descriptor knows everything static about one FUSE backend: where its
credentials live, where it mounts, and the exact commands that mount and
unmount it. Descriptors never touch a sandbox; the MountOrchestrator runs
what they describe.
"""

from abc import ABC, abstractmethod
from typing import List

from ..config import StorageConfig

MOUNT_POINT = "/workspace/files"


class MountDescriptor(ABC):
    """Pure description of how to mount one storage backend."""

    label = "storage"
    mount_point = MOUNT_POINT
    credentials_path = ""
    cache_dir = ""
    log_path = ""

    @abstractmethod
    def credentials_payload(self, storage: StorageConfig) -> bytes:
        """Contents of the file written to credentials_path before mounting."""
        ...

    @abstractmethod
    def mount_plan(self, storage: StorageConfig) -> List[str]:
        """
        Shell commands to run, in order, after the credentials are written.

        The plan creates the mount directory, restricts the credentials file,
        then invokes the FUSE binary.
        """
        ...

    @abstractmethod
    def unmount_command(self) -> str:
        ...

    def verify_command(self) -> str:
        return (
            f"mountpoint -q {self.mount_point} && echo MOUNTED || echo NOT_MOUNTED"
        )

    @staticmethod
    def verify_passed(stdout: str) -> bool:
        return stdout.strip() == "MOUNTED"
