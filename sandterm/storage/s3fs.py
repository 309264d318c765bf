"""Cloudflare R2 (S3-compatible object storage) mounted with s3fs."""

import shlex
from typing import List

from .base import MountDescriptor
from ..config import R2Storage


class S3FSDescriptor(MountDescriptor):
    label = "Cloudflare R2 storage"
    credentials_path = "/home/user/.passwd-s3fs"
    cache_dir = "/tmp/s3fs-cache"
    log_path = "/tmp/s3fs.log"

    def credentials_payload(self, storage: R2Storage) -> bytes:
        return f"{storage.access_key_id}:{storage.secret_access_key}".encode()

    def mount_plan(self, storage: R2Storage) -> List[str]:
        return [
            f"mkdir -p {self.mount_point} {self.cache_dir}",
            # s3fs refuses credential files readable by others
            f"chmod 600 {self.credentials_path}",
            (
                f"sudo s3fs {shlex.quote(storage.bucket)} {self.mount_point}"
                f" -o passwd_file={self.credentials_path}"
                f" -o url={shlex.quote(storage.endpoint)}"
                " -o use_path_request_style"
                " -o allow_other"
                f" -o use_cache={self.cache_dir}"
                f" -o logfile={self.log_path}"
            ),
        ]

    def unmount_command(self) -> str:
        return f"fusermount -u {self.mount_point}"
