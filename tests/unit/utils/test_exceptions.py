"""Unit tests for the exceptions module."""

import pytest

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


def test_hatchway_error() -> None:
    """Test the base HatchwayError class."""
    error = HatchwayError("Test error message")
    assert str(error) == "Test error message"
    assert error.code == "HatchwayError"
    assert error.details == {}

    # Test with custom code
    error = HatchwayError("Test with code", code="CUSTOM_CODE")
    assert error.code == "CUSTOM_CODE"

    # Test with details
    details = {"key": "value", "number": 123}
    error = HatchwayError("Test with details", details=details)
    assert error.details == details


def test_hatchway_error_drops_none_fields() -> None:
    """Keyword fields that are None are not added to details."""
    error = HatchwayError("Message", resource=None, slug="widget")
    assert error.details == {"slug": "widget"}


def test_manager_error() -> None:
    """Test the ManagerError class."""
    error = ManagerError("Manager error message")
    assert str(error) == "Manager error message"
    assert error.code == "ManagerError"
    assert "manager_name" not in error.details

    error = ManagerError(
        "Manager error with details", manager_name="TestManager", details={"key": "value"}
    )
    assert error.manager_name == "TestManager"
    assert error.details["manager_name"] == "TestManager"
    assert error.details["key"] == "value"


def test_manager_lifecycle_errors() -> None:
    """Test the initialization and shutdown errors."""
    error = ManagerInitializationError("Init error", manager_name="TestManager")
    assert error.code == "ManagerInitializationError"
    assert error.details["manager_name"] == "TestManager"

    error = ManagerShutdownError("Shutdown error", manager_name="TestManager")
    assert error.code == "ManagerShutdownError"
    assert isinstance(error, ManagerError)


def test_configuration_error() -> None:
    """Test the ConfigurationError class."""
    error = ConfigurationError("Config error with key", config_key="security.encryption_key")
    assert error.code == "ConfigurationError"
    assert error.details["config_key"] == "security.encryption_key"


def test_credential_and_auth_errors() -> None:
    """Test the CredentialError and AuthError classes."""
    error = CredentialError("Corrupted", credential_id="abc", reason="corrupted")
    assert error.credential_id == "abc"
    assert error.details == {"credential_id": "abc", "reason": "corrupted"}

    error = AuthError("No token", credential_id="abc", installation_id=42)
    assert error.code == "AuthError"
    assert error.details["installation_id"] == 42


def test_network_errors() -> None:
    """Test NetworkError and its subclasses."""
    error = NetworkError("Server error", status_code=502, url="https://api.github.com/x")
    assert error.status_code == 502
    assert error.url == "https://api.github.com/x"
    assert error.details["status_code"] == 502

    error = RateLimitError("Slow down", status_code=429, retry_after=3.0, reset_at=100.0)
    assert isinstance(error, NetworkError)
    assert error.retry_after == 3.0
    assert error.reset_at == 100.0
    assert error.code == "RateLimitError"

    error = OperationCancelled("Cancelled")
    assert isinstance(error, NetworkError)
    assert error.status_code is None


def test_package_errors() -> None:
    """Test the errors raised while installing packages."""
    error = NotFoundError("No release", resource="acme/widget@9.9.9")
    assert error.resource == "acme/widget@9.9.9"
    assert error.code == "NotFoundError"

    error = ArchiveError("Bad archive", archive_path="/tmp/a.zip")
    assert error.details["archive_path"] == "/tmp/a.zip"

    error = InstallError("Busy", slug="widget")
    assert error.details["slug"] == "widget"

    error = ApplicationError("Not initialized")
    assert isinstance(error, HatchwayError)


def test_exception_inheritance() -> None:
    """Test that every error derives from HatchwayError."""
    for error_class in (
            ManagerError,
            ConfigurationError,
            CredentialError,
            AuthError,
            NotFoundError,
            NetworkError,
            ArchiveError,
            InstallError,
            ApplicationError,
    ):
        with pytest.raises(HatchwayError):
            raise error_class("boom")
