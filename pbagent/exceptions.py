# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Platform Backup Agent Exceptions - Custom exceptions for the pbagent package.
"""


class AgentError(Exception):
    """Base exception for all agent errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(AgentError):
    """Raised when configuration is invalid."""

    pass


class TransportError(AgentError):
    """Raised when a socket or HTTP connection fails."""

    pass


class ProtocolError(AgentError):
    """Raised when a remote API answers with an unexpected status code."""

    def __init__(self, message: str, status_code: int, details: dict | None = None):
        self.status_code = status_code
        super().__init__(message, details={**(details or {}), "status_code": status_code})


class ArchiveError(AgentError):
    """Raised when the archive library fails. Carries the native error code."""

    def __init__(self, message: str, code: int | str | None = None, details: dict | None = None):
        self.code = code
        super().__init__(message, details={**(details or {}), "code": code})


class OwnershipError(AgentError):
    """Raised when an ownership fix inside a container fails."""

    pass


class NotFoundError(AgentError):
    """Raised when an expected file, entry or setting is absent."""

    pass


class RestoreError(AgentError):
    """Raised when restore operations fail."""

    pass


class S3OperationError(AgentError):
    """Raised when S3 operations fail."""

    pass
