from .base import MountDescriptor, MOUNT_POINT
from .s3fs import S3FSDescriptor
from .blobfuse import BlobfuseDescriptor
from ..config import StorageBackend

_DESCRIPTORS = {
    StorageBackend.R2: S3FSDescriptor,
    StorageBackend.AZURE: BlobfuseDescriptor,
}


def descriptor_for(backend: StorageBackend) -> MountDescriptor:
    """Return the mount descriptor for a storage backend."""
    return _DESCRIPTORS[StorageBackend(backend)]()


__all__ = [
    "MountDescriptor",
    "MOUNT_POINT",
    "S3FSDescriptor",
    "BlobfuseDescriptor",
    "descriptor_for",
]
