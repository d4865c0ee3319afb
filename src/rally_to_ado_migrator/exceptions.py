"""
Custom exception classes for the Rally to Azure DevOps migration tool.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class ConfigurationError(MigrationError):
    """Raised when the field mapping or connection configuration is unusable."""


class HierarchyCycleError(ConfigurationError):
    """Raised when parent references form a cycle and strict ordering is requested."""


class ApiError(MigrationError):
    """Raised when a remote API call fails after client-side retries."""

    status_code: int | None
    body: str

    def __init__(self, message: str, *, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RallyApiError(ApiError):
    """Raised for failed Rally WSAPI requests."""


class AdoApiError(ApiError):
    """Raised for failed Azure DevOps REST requests."""

    @property
    def is_already_exists(self) -> bool:
        """Whether ADO rejected the write because the relation/link already exists."""
        if self.status_code == 409:
            return True
        text = f"{self} {self.body}".lower()
        return "tf201036" in text or "already exists" in text
