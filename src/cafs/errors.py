"""Custom exceptions for CAFS with user-friendly context."""

from typing import Any


class CASError(Exception):
    """Base error for CAFS."""

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format error message with context."""
        parts = [self.message]

        if self.context:
            ctx_parts = [f"{k}={v}" for k, v in self.context.items() if v is not None]
            if ctx_parts:
                parts.append(f"({', '.join(ctx_parts)})")

        return " ".join(parts)


class ContentNotFoundError(CASError):
    """Payload or CAS entry not found."""

    def __init__(
        self,
        content_hash: str,
        folder: str | None = None,
        context_msg: str | None = None,
        **context: Any
    ):
        msg = f"Content with hash '{content_hash}' not found"
        if folder:
            msg += f" in folder '{folder}'"
        if context_msg:
            msg += f" ({context_msg})"

        super().__init__(msg, content_hash=content_hash, folder=folder, **context)


class SizeLimitExceededError(CASError):
    """Encoded payload is larger than the configured maximum."""

    def __init__(self, size: int, limit: int, **context: Any):
        super().__init__(
            f"Content size {size} exceeds maximum allowed size {limit}",
            size=size,
            limit=limit,
            **context
        )


class ContentIntegrityError(CASError):
    """Stored bytes no longer hash to the digest they are filed under."""

    def __init__(
        self,
        expected: str,
        actual: str,
        path: str | None = None,
        **context: Any
    ):
        super().__init__(
            f"Content hash mismatch. Expected: {expected}, Actual: {actual}. "
            f"The stored payload is corrupted.",
            path=path,
            **context
        )
        self.expected = expected
        self.actual = actual


class StorageAdapterError(CASError):
    """Blob or metadata backend failed underneath an operation."""

    def __init__(
        self,
        operation: str,
        path: str | None = None,
        cause: BaseException | None = None,
        **context: Any
    ):
        msg = f"Storage backend failed during {operation}"
        if cause is not None:
            msg += f": {type(cause).__name__}: {cause}"
        super().__init__(msg, path=path, **context)
        self.operation = operation


class InvalidDigestError(CASError, ValueError):
    """Address is neither a SHA-256 digest nor the matching storage path."""

    def __init__(self, value: str, folder: str | None = None, **context: Any):
        super().__init__(
            f"'{value}' is not a SHA-256 content digest",
            folder=folder,
            **context
        )


class ConfigurationError(CASError, ValueError):
    """Configuration value rejected at construction time."""
