"""
Error taxonomy for sandterm.

Errors raised while a session is being created abort that session and are
reported to the client once. Errors during teardown are logged, never raised.
"""


class BrokerError(Exception):
    """Base class for every error sandterm raises on purpose."""


class ConfigurationError(BrokerError, ValueError):
    """Missing or invalid settings. Detected before anything touches a sandbox."""


class AuthenticationError(BrokerError):
    """Delegated-identity pre-check failed inside the sandbox."""


class MountError(BrokerError):
    """A storage mount command failed or the mount could not be verified."""


class CreationError(BrokerError):
    """The sandbox or its terminal could not be provisioned."""


class TerminalError(BrokerError):
    """Terminal I/O failed after the session became ready."""
