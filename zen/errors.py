"""Error kinds raised across zen, each with a stable code."""

from typing import TypeVar


class ZenError(Exception):
    """Base exception for all zen errors."""

    code = "INTERNAL"

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(f"[{self.code}] {message}")


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


class InvalidArgument(ZenError):
    code = "INVALID_ARGUMENT"


class NotFound(ZenError):
    code = "NOT_FOUND"


class AlreadyExists(ZenError):
    code = "ALREADY_EXISTS"


class Cancelled(ZenError):
    """Raised when the user aborts an interactive operation."""

    code = "CANCELLED"


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class AuthError(ZenError):
    code = "AUTH_ERROR"


class NotAuthenticated(AuthError):
    code = "NOT_AUTHENTICATED"


class Forbidden(AuthError):
    code = "FORBIDDEN"


class PromptDisabled(AuthError):
    code = "PROMPT_DISABLED"


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


class NetworkFailure(ZenError):
    code = "NETWORK_FAILURE"


class NetworkError(NetworkFailure):
    code = "NETWORK_ERROR"


class Timeout(NetworkFailure):
    code = "TIMEOUT"


class RateLimited(NetworkFailure):
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int | None = None, details: str | None = None) -> None:
        super().__init__(message, details)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------


class IntegrityFailure(ZenError):
    code = "INTEGRITY_FAILURE"


class ChecksumMismatch(IntegrityFailure):
    code = "CHECKSUM_MISMATCH"

    def __init__(self, message: str, expected: str | None = None, actual: str | None = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class SchemaError(IntegrityFailure):
    code = "SCHEMA_ERROR"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(ZenError):
    code = "STORAGE_ERROR"


class StorageUnavailable(StorageError):
    code = "STORAGE_UNAVAILABLE"


class EntryTooLarge(StorageError):
    code = "ENTRY_TOO_LARGE"


class EncryptionError(StorageError):
    code = "ENCRYPTION_ERROR"


# ---------------------------------------------------------------------------
# Template
# ---------------------------------------------------------------------------


class TemplateError(ZenError):
    code = "TEMPLATE_ERROR"

    def __init__(self, message: str, line: int | None = None, details: str | None = None) -> None:
        super().__init__(message if line is None else f"{message} (line {line})", details)
        self.line = line


class CompileError(TemplateError):
    code = "COMPILE_ERROR"


class RenderError(TemplateError):
    code = "RENDER_ERROR"


class VariableMissing(TemplateError):
    code = "VARIABLE_MISSING"

    def __init__(self, names: list[str], line: int | None = None) -> None:
        super().__init__(f"missing template variable(s): {', '.join(names)}", line)
        self.names = names


# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------


class WorkspaceError(ZenError):
    code = "WORKSPACE_ERROR"


class TaskManifestMissing(WorkspaceError):
    code = "TASK_MANIFEST_MISSING"


class AssetUnknown(WorkspaceError):
    code = "ASSET_UNKNOWN"

    def __init__(self, command: str, suggestions: list[str] | None = None) -> None:
        super().__init__(f"unknown command '{command}'")
        self.command = command
        self.suggestions = suggestions or []


E = TypeVar("E", bound=ZenError)


def with_context(error: E, operation: str, key: str | None = None) -> E:
    """Prefix an error's message with the operation (and key) that raised it, keeping its class."""
    where = f"{operation} {key}" if key else operation
    if error.message.startswith(f"{where}: "):
        return error
    error.message = f"{where}: {error.message}"
    error.args = (f"[{error.code}] {error.message}",)
    return error
