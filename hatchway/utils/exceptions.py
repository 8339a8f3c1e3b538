from __future__ import annotations

from typing import Any, Dict, Optional


class HatchwayError(Exception):
    """Base exception for all Hatchway errors."""

    def __init__(
            self,
            message: str,
            *args: Any,
            code: Optional[str] = None,
            details: Optional[Dict[str, Any]] = None,
            **kwargs: Any
    ) -> None:
        """
        Initialize exception.

        Args:
            message: Error message
            *args: Additional positional arguments to pass to the parent Exception.
            code: Machine-readable error code (defaults to the class name)
            details: Additional error information
            **kwargs: Extra detail fields, merged into ``details`` when not None
        """
        self.message = message
        self.code = code or type(self).__name__
        self.details: Dict[str, Any] = dict(details or {})
        for key, value in kwargs.items():
            if value is not None:
                self.details[key] = value
        super().__init__(message, *args)

    def __str__(self) -> str:
        """String representation."""
        return f"{self.message}"


class ManagerError(HatchwayError):
    """Base exception for manager-related errors."""

    def __init__(self, message: str, manager_name: Optional[str] = None, **kwargs: Any) -> None:
        """
        Initialize manager error.

        Args:
            message: Error message
            manager_name: Name of the affected manager
            **kwargs: Additional error information
        """
        super().__init__(message, manager_name=manager_name, **kwargs)
        self.manager_name = manager_name


class ManagerInitializationError(ManagerError):
    """Exception raised when a manager fails to initialize."""

    pass


class ManagerShutdownError(ManagerError):
    """Exception raised when a manager fails to shut down cleanly."""

    pass


class ConfigurationError(HatchwayError):
    """Exception raised for configuration-related errors."""

    def __init__(
            self, message: str, *args: Any, config_key: Optional[str] = None, **kwargs: Any
    ) -> None:
        """Initialize a ConfigurationError.

        Args:
            message: A descriptive error message.
            *args: Additional positional arguments to pass to the parent Exception.
            config_key: The configuration key that caused the error.
            **kwargs: Additional keyword arguments to pass to the parent Exception.
        """
        super().__init__(message, *args, config_key=config_key, **kwargs)
        self.config_key = config_key


class CredentialError(HatchwayError):
    """Exception raised when a stored credential is missing or corrupted."""

    def __init__(
            self, message: str, *args: Any, credential_id: Optional[str] = None, **kwargs: Any
    ) -> None:
        """Initialize a CredentialError.

        Args:
            message: A descriptive error message.
            *args: Additional positional arguments to pass to the parent Exception.
            credential_id: The credential record that caused the error.
            **kwargs: Additional keyword arguments to pass to the parent Exception.
        """
        super().__init__(message, *args, credential_id=credential_id, **kwargs)
        self.credential_id = credential_id


class AuthError(HatchwayError):
    """Exception raised when signing or token exchange fails."""

    def __init__(
            self,
            message: str,
            *args: Any,
            credential_id: Optional[str] = None,
            installation_id: Optional[int] = None,
            **kwargs: Any,
    ) -> None:
        """Initialize an AuthError.

        Args:
            message: A descriptive error message.
            *args: Additional positional arguments to pass to the parent Exception.
            credential_id: The credential record being authenticated.
            installation_id: The installation the token was requested for.
            **kwargs: Additional keyword arguments to pass to the parent Exception.
        """
        super().__init__(
            message, *args, credential_id=credential_id, installation_id=installation_id, **kwargs
        )


class NotFoundError(HatchwayError):
    """Exception raised when a release, record or package does not exist."""

    def __init__(
            self, message: str, *args: Any, resource: Optional[str] = None, **kwargs: Any
    ) -> None:
        """Initialize a NotFoundError.

        Args:
            message: A descriptive error message.
            *args: Additional positional arguments to pass to the parent Exception.
            resource: Identifier of the missing resource.
            **kwargs: Additional keyword arguments to pass to the parent Exception.
        """
        super().__init__(message, *args, resource=resource, **kwargs)
        self.resource = resource


class NetworkError(HatchwayError):
    """Exception raised for timeouts, connection failures and non-2xx responses."""

    def __init__(
            self,
            message: str,
            *args: Any,
            status_code: Optional[int] = None,
            url: Optional[str] = None,
            **kwargs: Any,
    ) -> None:
        """Initialize a NetworkError.

        Args:
            message: A descriptive error message.
            *args: Additional positional arguments to pass to the parent Exception.
            status_code: The HTTP status code associated with the error.
            url: The URL that was being requested.
            **kwargs: Additional keyword arguments to pass to the parent Exception.
        """
        super().__init__(message, *args, status_code=status_code, url=url, **kwargs)
        self.status_code = status_code
        self.url = url


class RateLimitError(NetworkError):
    """Exception raised when the remote quota is exhausted beyond the allowed wait."""

    def __init__(
            self,
            message: str,
            *args: Any,
            reset_at: Optional[float] = None,
            retry_after: Optional[float] = None,
            **kwargs: Any,
    ) -> None:
        """Initialize a RateLimitError.

        Args:
            message: A descriptive error message.
            *args: Additional positional arguments to pass to the parent Exception.
            reset_at: Epoch time when the quota resets.
            retry_after: Seconds the server asked us to wait.
            **kwargs: Additional keyword arguments to pass to the parent Exception.
        """
        super().__init__(message, *args, reset_at=reset_at, retry_after=retry_after, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


class OperationCancelled(NetworkError):
    """Exception raised when a pending wait is cancelled."""

    pass


class ArchiveError(HatchwayError):
    """Exception raised when a package archive has the wrong shape."""

    def __init__(
            self, message: str, *args: Any, archive_path: Optional[str] = None, **kwargs: Any
    ) -> None:
        """Initialize an ArchiveError.

        Args:
            message: A descriptive error message.
            *args: Additional positional arguments to pass to the parent Exception.
            archive_path: The archive that failed verification.
            **kwargs: Additional keyword arguments to pass to the parent Exception.
        """
        super().__init__(message, *args, archive_path=archive_path, **kwargs)


class InstallError(HatchwayError):
    """Exception raised when the host install mechanism rejects a package."""

    def __init__(
            self, message: str, *args: Any, slug: Optional[str] = None, **kwargs: Any
    ) -> None:
        """Initialize an InstallError.

        Args:
            message: A descriptive error message.
            *args: Additional positional arguments to pass to the parent Exception.
            slug: The package slug being installed.
            **kwargs: Additional keyword arguments to pass to the parent Exception.
        """
        super().__init__(message, *args, slug=slug, **kwargs)
        self.slug = slug


class ApplicationError(HatchwayError):
    """Exception raised when the application core cannot start or serve a request."""

    pass
