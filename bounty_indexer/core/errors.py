class IndexerError(Exception):
    """Base error for the sync pipeline."""


class LedgerError(IndexerError):
    """Raised when the ledger node cannot answer a request."""


class LedgerUnavailableError(LedgerError):
    """Raised on transport failures (timeouts, dropped connections, 5xx).

    Transient: the window or poll that hit it is retried from the same cursor.
    """


class LedgerResponseError(LedgerError):
    """Raised when the node returns a JSON-RPC error object or a malformed result."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class EventDecodeError(IndexerError):
    """Raised when a log cannot be turned into a typed event payload."""


class ProjectionWriteError(IndexerError):
    """Raised when applying an event to the projection failed.

    Fatal for the current run: the checkpoint is left where it was so a restart
    resumes from the last fully applied block.
    """


class CheckpointCorruptError(IndexerError):
    """Raised when the stored checkpoint cannot be read as a block number.

    The indexer refuses to start rather than replay from the start block.
    """
