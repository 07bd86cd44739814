"""Remote management commands sent to an authorised node."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
import logging
from typing import Any, TypeVar

from .codecs.frames import CommandResponseFrame, InboundFrame
from .const import MAX_PATH_LENGTH, get_command_timeout
from .correlator import RequestCorrelator
from .errors import MonitorError, RequestTimeout, ServerError, TransportError
from .remote_auth import RemoteAuthManager

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")

REMOTE_COMMAND = "remote_command"


class CommandErrorCode(str, Enum):
    """Failure codes reported by remote management."""

    INVALID_COMMAND = "INVALID_COMMAND"
    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    COMMAND_FAILED = "COMMAND_FAILED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    UNAUTHORIZED = "UNAUTHORIZED"
    ACCESS_DENIED = "ACCESS_DENIED"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    FILE_EXISTS = "FILE_EXISTS"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_PATH = "INVALID_PATH"
    DIRECTORY_NOT_EMPTY = "DIRECTORY_NOT_EMPTY"
    OPERATION_FAILED = "OPERATION_FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    NODE_OFFLINE = "NODE_OFFLINE"
    NODE_NOT_FOUND = "NODE_NOT_FOUND"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    CONNECTION_LOST = "CONNECTION_LOST"
    AUTH_FAILED = "AUTH_FAILED"
    INVALID_JWT = "INVALID_JWT"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    REMOTE_NOT_ENABLED = "REMOTE_NOT_ENABLED"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    DISK_FULL = "DISK_FULL"
    MEMORY_ERROR = "MEMORY_ERROR"
    UNKNOWN = "UNKNOWN"


ERROR_MESSAGES: dict[str, str] = {
    CommandErrorCode.INVALID_COMMAND.value: "Invalid command type",
    CommandErrorCode.INVALID_PARAMETERS.value: "Invalid command parameters",
    CommandErrorCode.COMMAND_FAILED.value: "Command execution failed",
    CommandErrorCode.PERMISSION_DENIED.value: "Permission denied",
    CommandErrorCode.UNAUTHORIZED.value: "Unauthorized access",
    CommandErrorCode.ACCESS_DENIED.value: "Access denied",
    CommandErrorCode.FILE_NOT_FOUND.value: "File or directory not found",
    CommandErrorCode.FILE_EXISTS.value: "File already exists",
    CommandErrorCode.FILE_TOO_LARGE.value: "File size exceeds limit",
    CommandErrorCode.INVALID_PATH.value: "Invalid file path",
    CommandErrorCode.DIRECTORY_NOT_EMPTY.value: "Directory is not empty",
    CommandErrorCode.OPERATION_FAILED.value: "Operation failed",
    CommandErrorCode.TIMEOUT.value: "Operation timed out",
    CommandErrorCode.CANCELLED.value: "Operation cancelled",
    CommandErrorCode.NODE_OFFLINE.value: "Node is offline",
    CommandErrorCode.NODE_NOT_FOUND.value: "Node not found",
    CommandErrorCode.SYSTEM_ERROR.value: "System error occurred",
    CommandErrorCode.INTERNAL_ERROR.value: "Internal server error",
    CommandErrorCode.NETWORK_ERROR.value: "Network error",
    CommandErrorCode.CONNECTION_LOST.value: "Connection lost",
    CommandErrorCode.AUTH_FAILED.value: "Authentication failed",
    CommandErrorCode.INVALID_JWT.value: "Invalid authentication token",
    CommandErrorCode.TOKEN_EXPIRED.value: "Authentication token expired",
    CommandErrorCode.REMOTE_NOT_ENABLED.value: "Remote management is not enabled",
    CommandErrorCode.RESOURCE_EXHAUSTED.value: "System resources exhausted",
    CommandErrorCode.DISK_FULL.value: "Disk is full",
    CommandErrorCode.MEMORY_ERROR.value: "Out of memory",
    CommandErrorCode.UNKNOWN.value: "An unknown error occurred",
}

ERROR_SUGGESTIONS: dict[str, str] = {
    CommandErrorCode.PERMISSION_DENIED.value: "Check file permissions on the node",
    CommandErrorCode.FILE_NOT_FOUND.value: "Verify the path and try again",
    CommandErrorCode.FILE_EXISTS.value: "Choose a different name or allow overwrite",
    CommandErrorCode.FILE_TOO_LARGE.value: "Compress or split the file",
    CommandErrorCode.NODE_OFFLINE.value: "Check the node connection and try again later",
    CommandErrorCode.TIMEOUT.value: "Try again or allow a longer timeout",
    CommandErrorCode.TOKEN_EXPIRED.value: "Authorise remote management again",
    CommandErrorCode.DISK_FULL.value: "Free up disk space on the node",
    CommandErrorCode.DIRECTORY_NOT_EMPTY.value: "Delete recursively or empty the directory first",
    CommandErrorCode.REMOTE_NOT_ENABLED.value: "Enable remote management in the node configuration",
}

RETRYABLE_CODES: frozenset[str] = frozenset(
    {
        CommandErrorCode.TIMEOUT.value,
        CommandErrorCode.NETWORK_ERROR.value,
        CommandErrorCode.CONNECTION_LOST.value,
        CommandErrorCode.TOKEN_EXPIRED.value,
    }
)
REAUTH_CODES: frozenset[str] = frozenset(
    {
        CommandErrorCode.AUTH_FAILED.value,
        CommandErrorCode.INVALID_JWT.value,
        CommandErrorCode.TOKEN_EXPIRED.value,
        CommandErrorCode.UNAUTHORIZED.value,
    }
)


class RemoteCommandError(MonitorError):
    """A remote command failed on the node or on the way there."""

    def __init__(
        self,
        code: str | None,
        message: str | None = None,
        *,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        code = str(code or CommandErrorCode.UNKNOWN.value).upper()
        text = message or ERROR_MESSAGES.get(code) or ERROR_MESSAGES[CommandErrorCode.UNKNOWN.value]
        super().__init__(text)
        self.code = code
        self.message = text
        self.details = dict(details or {})

    @classmethod
    def from_response(cls, error: Any) -> RemoteCommandError:
        """Build an error from a response ``error`` field."""

        if isinstance(error, str):
            return cls(CommandErrorCode.UNKNOWN.value, error)
        if not isinstance(error, Mapping):
            return cls(CommandErrorCode.UNKNOWN.value, "Unknown error occurred")
        details = error.get("details")
        return cls(
            error.get("code"),
            error.get("message"),
            details=details if isinstance(details, Mapping) else None,
        )

    @property
    def retryable(self) -> bool:
        """Return True if repeating the command may succeed."""

        return self.code in RETRYABLE_CODES

    @property
    def requires_reauth(self) -> bool:
        """Return True if the node token must be renewed first."""

        return self.code in REAUTH_CODES

    @property
    def suggestion(self) -> str | None:
        """Return a short hint for the user, if one exists."""

        return ERROR_SUGGESTIONS.get(self.code)

    def as_dict(self) -> dict[str, Any]:
        """Return a serialisable view of the error."""

        return {
            "code": self.code,
            "message": self.message,
            "suggestion": self.suggestion,
            "retryable": self.retryable,
            "requires_reauth": self.requires_reauth,
        }


def validate_path(path: Any) -> str:
    """Return ``path`` when it is safe to send to a node.

    Raises :class:`RemoteCommandError` with ``INVALID_PATH`` otherwise.
    """

    if not path or not isinstance(path, str):
        raise RemoteCommandError(CommandErrorCode.INVALID_PATH.value, "Path cannot be empty")
    if len(path) > MAX_PATH_LENGTH:
        raise RemoteCommandError(CommandErrorCode.INVALID_PATH.value, "Path is too long")
    if ".." in path or "\0" in path:
        raise RemoteCommandError(
            CommandErrorCode.INVALID_PATH.value, "Path contains illegal characters"
        )
    return path


async def call_with_retry(
    func: Callable[[], Awaitable[_T]],
    *,
    max_retries: int = 3,
    retry_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> _T:
    """Run ``func`` and repeat it on retryable :class:`RemoteCommandError`.

    The wait grows linearly: ``retry_delay`` times the attempt number.
    """

    attempt = 0
    while True:
        try:
            return await func()
        except RemoteCommandError as err:
            if not err.retryable or attempt >= max_retries:
                raise
            attempt += 1
            _LOGGER.debug(
                "Retrying remote command after %s (%d/%d)", err.code, attempt, max_retries
            )
            await sleep(retry_delay * attempt)


class RemoteCommandClient:
    """Send ``remote_command`` requests through the correlator."""

    def __init__(
        self, correlator: RequestCorrelator, remote_auth: RemoteAuthManager
    ) -> None:
        """Initialise the client."""
        self._correlator = correlator
        self._remote_auth = remote_auth

    async def send_command(
        self,
        node_reference: str,
        command_type: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Run ``command_type`` on the node and return its ``result``."""

        node = str(node_reference or "").strip()
        if not node:
            raise RemoteCommandError(
                CommandErrorCode.INVALID_PARAMETERS.value, "Node reference is required"
            )
        if not command_type:
            raise RemoteCommandError(CommandErrorCode.INVALID_COMMAND.value)
        if not self._remote_auth.is_authorized(node):
            raise RemoteCommandError(
                CommandErrorCode.UNAUTHORIZED.value,
                f"Remote management is not authorised for {node}",
            )

        command = {key: value for key, value in (params or {}).items() if value is not None}
        command["type"] = command_type
        payload = {"type": REMOTE_COMMAND, "node_reference": node, "command": command}
        limit = timeout if timeout is not None else get_command_timeout(command_type)

        try:
            frame = await self._correlator.send_request(payload, limit)
        except ServerError as err:
            error = RemoteCommandError(err.code, err.message or None)
            self._handle_failure(node, command_type, error)
            raise error from err
        except RequestTimeout as err:
            error = RemoteCommandError(CommandErrorCode.TIMEOUT.value, str(err))
            self._handle_failure(node, command_type, error)
            raise error from err
        except TransportError as err:
            error = RemoteCommandError(CommandErrorCode.CONNECTION_LOST.value, str(err))
            self._handle_failure(node, command_type, error)
            raise error from err
        return _result(frame)

    async def execute(
        self,
        node_reference: str,
        cmd: str,
        args: list[str] | None = None,
        *,
        cwd: str | None = None,
    ) -> Any:
        """Run a shell command on the node."""

        if not cmd:
            raise RemoteCommandError(
                CommandErrorCode.INVALID_PARAMETERS.value, "Command cannot be empty"
            )
        return await self.send_command(
            node_reference,
            "execute",
            {"cmd": cmd, "args": list(args or []), "cwd": cwd},
        )

    async def list_directory(
        self,
        node_reference: str,
        path: str,
        *,
        recursive: bool = False,
        include_hidden: bool = False,
    ) -> Any:
        """List a directory on the node."""

        return await self.send_command(
            node_reference,
            "list",
            {
                "path": validate_path(path),
                "recursive": recursive,
                "include_hidden": include_hidden,
            },
        )

    async def system_info(
        self, node_reference: str, categories: list[str] | None = None
    ) -> Any:
        """Return system information reported by the node."""

        return await self.send_command(
            node_reference, "system_info", {"categories": categories}
        )

    async def delete(self, node_reference: str, path: str) -> Any:
        """Delete a file or directory on the node."""

        return await self.send_command(node_reference, "delete", {"path": validate_path(path)})

    def _handle_failure(
        self, node: str, command_type: str, error: RemoteCommandError
    ) -> None:
        _LOGGER.info(
            "Remote command %s on %s failed (%s: %s)",
            command_type,
            node,
            error.code,
            error.message,
        )
        if error.requires_reauth:
            self._remote_auth.invalidate(node)


def _result(frame: InboundFrame) -> Any:
    if isinstance(frame, CommandResponseFrame):
        return frame.result
    return frame.raw.get("result", frame.raw)


__all__ = [
    "CommandErrorCode",
    "ERROR_MESSAGES",
    "RemoteCommandClient",
    "RemoteCommandError",
    "call_with_retry",
    "validate_path",
]
