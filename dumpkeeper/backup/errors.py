"""
Error types raised by a backup cycle.

Fatal errors abort the cycle and leave no partial artifact behind.
Non-fatal errors are logged and collected as warnings; the cycle's
outcome is unchanged.
"""


class BackupError(Exception):
    """Base class for backup cycle errors."""

    kind = 'BackupError'
    fatal = True


class CredentialUnavailable(BackupError):
    """Raised when no credential source yields a non-empty value."""

    kind = 'CredentialUnavailable'


class TargetUnreachable(BackupError):
    """Raised when the connectivity probe fails."""

    kind = 'TargetUnreachable'


class DumpFailed(BackupError):
    """Raised when the dump producer fails or produces an empty file."""

    kind = 'DumpFailed'


class CompressionFailed(BackupError):
    """Raised when the raw dump cannot be compressed."""

    kind = 'CompressionFailed'


class MetadataWriteFailed(BackupError):
    """Raised when the metadata sidecar cannot be written."""

    kind = 'MetadataWriteFailed'
    fatal = False


class PruneFailed(BackupError):
    """Raised when a single expired file cannot be deleted."""

    kind = 'PruneFailed'
    fatal = False

    def __init__(self, path, reason):
        super().__init__(f"Failed to delete {path}: {reason}")
        self.path = path
        self.reason = reason


class CycleInProgress(BackupError):
    """Raised when another cycle holds the lock for the same output directory."""

    kind = 'CycleInProgress'
    fatal = False


class CycleCancelled(BackupError):
    """Raised when a cycle is cancelled by a signal or cancellation check."""

    kind = 'CycleCancelled'


def redact(text, secret: str, placeholder: str = '***') -> str:
    """
    Remove every occurrence of a secret from a piece of text.

    Args:
        text: Text that may contain the secret (non-strings are converted)
        secret: Secret value to hide (ignored when empty)
        placeholder: Replacement string

    Returns:
        Redacted text
    """
    text = str(text)
    if secret:
        text = text.replace(secret, placeholder)
    return text
