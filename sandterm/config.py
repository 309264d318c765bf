"""
Configuration dataclasses for sandterm.

All settings have sensible defaults. Override via BrokerConfig() or load
them from the environment (and a .env file) with load_config().

Storage settings are one dataclass per backend/auth-mode combination, so the
fields a mount needs are exactly the fields its config carries.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import ClassVar, Dict, List, Mapping, Optional, Tuple, Union

from dotenv import load_dotenv

from .errors import ConfigurationError


class SandboxType(str, Enum):
    LOCAL = "local"
    E2B = "e2b"


class StorageBackend(str, Enum):
    R2 = "r2"          # object storage via s3fs
    AZURE = "azure"    # blob storage via blobfuse2


class AuthMode(str, Enum):
    KEY = "key"
    CLI = "cli"        # delegated to the host's Azure CLI login


@dataclass
class E2BConfig:
    """E2B cloud sandbox settings."""
    api_key: str = ""
    template: str = "base"
    storage_template: Optional[str] = None  # None = same as template
    sandbox_timeout: int = 3600  # provider-side lifetime, seconds


class _StorageConfig:
    """Shared behaviour of the storage variants."""
    backend: ClassVar[StorageBackend]
    auth_mode: ClassVar[AuthMode]
    REQUIRED: ClassVar[Tuple[str, ...]] = ()

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED if not getattr(self, name)]


@dataclass
class R2Storage(_StorageConfig):
    """Cloudflare R2 (or any S3-compatible store) mounted with s3fs."""
    backend: ClassVar[StorageBackend] = StorageBackend.R2
    auth_mode: ClassVar[AuthMode] = AuthMode.KEY
    REQUIRED: ClassVar[Tuple[str, ...]] = (
        "access_key_id", "secret_access_key", "endpoint", "bucket",
    )

    access_key_id: str = ""
    secret_access_key: str = ""
    endpoint: str = ""
    bucket: str = ""


@dataclass
class AzureKeyStorage(_StorageConfig):
    """Azure Blob Storage mounted with blobfuse2 using an account key."""
    backend: ClassVar[StorageBackend] = StorageBackend.AZURE
    auth_mode: ClassVar[AuthMode] = AuthMode.KEY
    REQUIRED: ClassVar[Tuple[str, ...]] = ("account", "container", "account_key")

    account: str = ""
    container: str = "cloud-dev-workspace"
    account_key: str = ""
    endpoint: Optional[str] = None  # e.g. Azurite for local development


@dataclass
class AzureCliStorage(_StorageConfig):
    """Azure Blob Storage mounted with blobfuse2 using the host's `az login`."""
    backend: ClassVar[StorageBackend] = StorageBackend.AZURE
    auth_mode: ClassVar[AuthMode] = AuthMode.CLI
    REQUIRED: ClassVar[Tuple[str, ...]] = ("account", "container")

    account: str = ""
    container: str = "cloud-dev-workspace"
    endpoint: Optional[str] = None
    credentials_dir: Path = field(default_factory=lambda: Path.home() / ".azure")


StorageConfig = Union[R2Storage, AzureKeyStorage, AzureCliStorage]


@dataclass
class BrokerConfig:
    """Top-level configuration for the terminal broker."""
    sandbox: SandboxType = SandboxType.LOCAL
    e2b: E2BConfig = field(default_factory=E2BConfig)
    storage: Optional[StorageConfig] = None
    storage_enabled: bool = False
    idle_timeout: float = 3600  # seconds without input before teardown
    sandbox_id: Optional[str] = None  # attach to this sandbox instead of creating one
    session_env: Dict[str, str] = field(default_factory=dict)
    welcome_banner: List[str] = field(
        default_factory=lambda: ["Welcome to Cloud Dev Environment"]
    )
    host: str = "0.0.0.0"
    port: int = 3000
    frontend_url: str = "http://localhost:5174"
    shutdown_grace: float = 10.0
    log_level: str = "INFO"
    log_file: Optional[Path] = None  # JSON lines file
    local_root: Optional[Path] = None  # base dir for LocalProvider sandboxes

    @property
    def active_storage(self) -> Optional[StorageConfig]:
        """The storage config to mount, or None when storage is off."""
        if self.storage_enabled and self.storage is not None:
            return self.storage
        return None


def _flag(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() == "true"


def _number(env: Mapping[str, str], key: str, default, cast=int):
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None


def _enum(env: Mapping[str, str], key: str, enum_type, default):
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return enum_type(raw.strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ConfigurationError(f"{key} must be one of: {allowed} (got {raw!r})") from None


def _storage_from_env(env: Mapping[str, str], backend: StorageBackend) -> StorageConfig:
    if backend == StorageBackend.R2:
        return R2Storage(
            access_key_id=env.get("R2_ACCESS_KEY_ID", ""),
            secret_access_key=env.get("R2_SECRET_ACCESS_KEY", ""),
            endpoint=env.get("R2_ENDPOINT", ""),
            bucket=env.get("R2_BUCKET", ""),
        )

    auth_mode = _enum(env, "AZURE_AUTH_MODE", AuthMode, AuthMode.CLI)
    account = env.get("AZURE_STORAGE_ACCOUNT", "")
    container = env.get("AZURE_STORAGE_CONTAINER") or "cloud-dev-workspace"
    endpoint = env.get("AZURE_STORAGE_ENDPOINT") or None
    if auth_mode == AuthMode.KEY:
        return AzureKeyStorage(
            account=account,
            container=container,
            account_key=env.get("AZURE_STORAGE_KEY", ""),
            endpoint=endpoint,
        )
    return AzureCliStorage(account=account, container=container, endpoint=endpoint)


def load_config(environ: Optional[Mapping[str, str]] = None) -> BrokerConfig:
    """
    Build a BrokerConfig from environment variables.

    When environ is None, a .env file in the working directory is loaded
    first and os.environ is read.

    Raises:
        ConfigurationError: malformed values, E2B selected without an API key,
            or cloud storage enabled with the local provider.
            Missing storage credentials are reported later, at mount time.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ
    env = environ

    sandbox = _enum(env, "SANDBOX_PROVIDER", SandboxType, SandboxType.E2B)
    sandbox_timeout = _number(env, "SANDBOX_TIMEOUT", 3600)

    e2b = E2BConfig(
        api_key=env.get("E2B_API_KEY", ""),
        template=env.get("E2B_TEMPLATE") or "base",
        storage_template=env.get("E2B_STORAGE_TEMPLATE") or None,
        sandbox_timeout=sandbox_timeout,
    )
    if sandbox == SandboxType.E2B and not e2b.api_key:
        raise ConfigurationError("Missing required environment variable: E2B_API_KEY")

    # AZURE_STORAGE_ENABLED predates the backend selector and implies azure
    legacy_azure = _flag(env, "AZURE_STORAGE_ENABLED")
    storage_enabled = _flag(env, "CLOUD_STORAGE_ENABLED") or legacy_azure
    backend = _enum(env, "CLOUD_STORAGE_TYPE", StorageBackend, StorageBackend.R2)
    if legacy_azure and not env.get("CLOUD_STORAGE_TYPE"):
        backend = StorageBackend.AZURE
    if storage_enabled and sandbox == SandboxType.LOCAL:
        raise ConfigurationError(
            "Cloud storage requires SANDBOX_PROVIDER=e2b; the local provider cannot mount it"
        )
    storage = _storage_from_env(env, backend) if storage_enabled else None

    session_env = {}
    if env.get("ANTHROPIC_API_KEY"):
        session_env["ANTHROPIC_API_KEY"] = env["ANTHROPIC_API_KEY"]

    log_file = env.get("LOG_FILE")
    local_root = env.get("LOCAL_SANDBOX_ROOT")

    config = BrokerConfig(
        sandbox=sandbox,
        e2b=e2b,
        storage=storage,
        storage_enabled=storage_enabled,
        idle_timeout=_number(env, "IDLE_TIMEOUT", sandbox_timeout, float),
        sandbox_id=env.get("E2B_SANDBOX_ID") or None,
        session_env=session_env,
        host=env.get("HOST") or "0.0.0.0",
        port=_number(env, "PORT", 3000),
        frontend_url=env.get("FRONTEND_URL") or "http://localhost:5174",
        shutdown_grace=_number(env, "SHUTDOWN_GRACE", 10.0, float),
        log_level=env.get("LOG_LEVEL") or "INFO",
        log_file=Path(log_file) if log_file else None,
        local_root=Path(local_root) if local_root else None,
    )
    return config


def describe(config: BrokerConfig) -> Dict[str, object]:
    """Redacted summary of a config, safe to log."""
    storage = config.active_storage
    return {
        "sandbox": config.sandbox.value,
        "port": config.port,
        "frontend_url": config.frontend_url,
        "idle_timeout": config.idle_timeout,
        "e2b_api_key": "***" if config.e2b.api_key else "NOT SET",
        "sandbox_id": config.sandbox_id or "NOT SET (will create new)",
        "storage": f"{storage.backend.value}/{storage.auth_mode.value}" if storage else "disabled",
        "session_env": sorted(config.session_env),
    }


def secret_values(config: BrokerConfig) -> List[str]:
    """Every credential in config, for masking in logs."""
    values = [config.e2b.api_key, *config.session_env.values()]
    storage = config.storage
    if isinstance(storage, R2Storage):
        values += [storage.access_key_id, storage.secret_access_key]
    elif isinstance(storage, AzureKeyStorage):
        values.append(storage.account_key)
    return [value for value in values if value]
