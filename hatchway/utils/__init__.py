"""Utility functions and classes for Hatchway."""

from hatchway.utils.exceptions import (
    ApplicationError,
    ArchiveError,
    AuthError,
    ConfigurationError,
    CredentialError,
    HatchwayError,
    InstallError,
    ManagerError,
    ManagerInitializationError,
    ManagerShutdownError,
    NetworkError,
    NotFoundError,
    OperationCancelled,
    RateLimitError,
)
