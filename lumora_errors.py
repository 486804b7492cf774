"""
Exceptions raised by the Lumora pipeline.

Every failure inside a conversation turn is turned into an assistant message
by the orchestrator; outside a turn they propagate to the UI / REST layer.
"""


class LumoraError(Exception):
    """Base exception for all pipeline errors."""
    pass


class UnsupportedInputError(LumoraError, ValueError):
    """Raised when input is rejected before any work is attempted."""
    pass


class UnsupportedFileTypeError(UnsupportedInputError):
    """Raised for an upload whose extension is not .csv, .xlsx or .xls."""
    pass


class MissingAPIKeyError(UnsupportedInputError):
    """Raised when the live provider is selected without an API key."""
    pass


class FileDecodeError(LumoraError, IOError):
    """Raised when the CSV / spreadsheet decoder fails."""
    pass


class ProviderError(LumoraError, RuntimeError):
    """Raised when the language-model provider call fails."""
    pass


class EmptyResponseError(ProviderError):
    """Raised when the provider answered without any content."""
    pass


class InvalidResponseFormatError(ProviderError):
    """Raised when the provider content is not the expected JSON object."""
    pass


class ProviderNotImplementedError(LumoraError, NotImplementedError):
    """Raised for a provider that has no live backend."""
    pass


class QueryExecutionError(LumoraError, RuntimeError):
    """Raised when the SQL engine rejects a query."""
    pass


class DatasetNotFoundError(LumoraError, KeyError):
    """Raised when selecting a dataset id that is not registered."""

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0]) if self.args else ""


class ConversationBusyError(LumoraError, RuntimeError):
    """Raised when the dataset or config is changed while a turn is in flight."""
    pass
