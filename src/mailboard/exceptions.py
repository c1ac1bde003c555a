"""Custom exceptions for Mailboard."""


class MailboardError(Exception):
    """Base exception for all Mailboard errors."""


class GmailAPIError(MailboardError):
    """Exception raised for Gmail API related errors."""


class SyncError(MailboardError):
    """Base exception for failures of an external sync call."""


class TransientSyncError(SyncError):
    """Network, timeout or quota failure. Safe to retry; the column stays healthy."""


class InvalidMappingError(SyncError):
    """The label backing a column is missing or no longer valid."""

    def __init__(self, message: str, mapping: str | None = None) -> None:
        super().__init__(message)
        self.mapping = mapping


class RenumberRequired(MailboardError):
    """Raised when two neighbouring positions leave no room for an insertion."""

    def __init__(self, previous: int, following: int) -> None:
        super().__init__(f"No gap between positions {previous} and {following}")
        self.previous = previous
        self.following = following


class ColumnNotFoundError(MailboardError):
    """Exception raised when a column id is not on the board."""


class DuplicateMappingError(MailboardError):
    """Exception raised when a label is already mapped to another column."""


class SystemColumnError(MailboardError):
    """Exception raised when trying to delete a system column."""


class OllamaConnectionError(MailboardError):
    """Exception raised when unable to connect to Ollama."""


class OllamaInferenceError(MailboardError):
    """Exception raised when Ollama inference fails."""


class ConfigurationError(MailboardError):
    """Exception raised for configuration related errors."""


class AuthenticationError(MailboardError):
    """Exception raised for authentication failures."""


class HistoryExpiredError(GmailAPIError):
    """Exception raised when a Gmail history cursor is too old to resume from."""
