"""
Azure Blob Storage mounted with blobfuse2.

blobfuse2 reads everything, including the account key in key mode, from a
YAML config file, so that file is this backend's credentials payload.
In azcli mode the key is omitted and blobfuse2 asks the Azure CLI for tokens.
"""

from typing import Any, Dict, List, Union

import yaml

from .base import MountDescriptor
from ..config import AuthMode, AzureCliStorage, AzureKeyStorage

AzureStorage = Union[AzureKeyStorage, AzureCliStorage]


class BlobfuseDescriptor(MountDescriptor):
    label = "Azure Blob Storage"
    credentials_path = "/tmp/blobfuse2.yaml"
    cache_dir = "/tmp/blobfuse2-cache"
    log_path = "/tmp/blobfuse2.log"

    # Where the Azure CLI inside the sandbox looks for its login
    cli_config_dir = "/home/user/.azure"
    cli_artifacts = (
        "azureProfile.json",
        "accessTokens.json",
        "msal_token_cache.json",
        "msal_http_cache.bin",
        "clouds.config",
        "config",
    )

    def config(self, storage: AzureStorage) -> Dict[str, Any]:
        azstorage: Dict[str, Any] = {
            "type": "block",
            "account-name": storage.account,
        }
        if storage.auth_mode == AuthMode.KEY:
            azstorage["account-key"] = storage.account_key
            azstorage["mode"] = "key"
        else:
            azstorage["mode"] = "azcli"
        azstorage["container"] = storage.container
        if storage.endpoint:
            azstorage["endpoint"] = storage.endpoint

        return {
            "logging": {"level": "log_warning", "file-path": self.log_path},
            "components": ["libfuse", "file_cache", "attr_cache", "azstorage"],
            "libfuse": {
                "attribute-expiration-sec": 240,
                "entry-expiration-sec": 240,
                "allow-other": True,
            },
            "file_cache": {"path": self.cache_dir, "timeout-sec": 120},
            "attr_cache": {"timeout-sec": 240},
            "azstorage": azstorage,
        }

    def credentials_payload(self, storage: AzureStorage) -> bytes:
        return yaml.safe_dump(self.config(storage), sort_keys=False).encode()

    def mount_plan(self, storage: AzureStorage) -> List[str]:
        return [
            f"mkdir -p {self.mount_point} {self.cache_dir}",
            f"chmod 600 {self.credentials_path}",
            (
                f"blobfuse2 mount {self.mount_point}"
                f" --config-file={self.credentials_path}"
                " --log-level=LOG_WARNING"
            ),
        ]

    def unmount_command(self) -> str:
        return f"fusermount3 -u {self.mount_point}"
