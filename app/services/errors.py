"""Exception hierarchy for chunked uploads and reassembly."""


class UploadError(Exception):
    """Base class for all upload pipeline errors."""


class ValidationError(UploadError):
    """Raised before any chunk work starts (bad file, too large, no owner)."""


class UploadCancelledError(UploadError):
    """Raised when an upload session was cancelled while in flight."""


class JobStateError(UploadError):
    """Raised when a job is unknown or in a state that forbids the operation."""


class TransientTransportError(UploadError):
    """A chunk PUT failed in a way that is worth retrying."""

    def __init__(self, message: str, chunk_index: int) -> None:
        super().__init__(message)
        self.chunk_index = chunk_index


class TerminalTransportError(UploadError):
    """A chunk could not be uploaded after exhausting its retry budget."""

    def __init__(self, message: str, chunk_index: int, attempts: int) -> None:
        super().__init__(message)
        self.chunk_index = chunk_index
        self.attempts = attempts


class ReassemblyError(UploadError):
    """A chunk download or merge step failed during reassembly."""

    def __init__(self, message: str, chunk_index: int | None = None) -> None:
        super().__init__(message)
        self.chunk_index = chunk_index


class FinalizeError(UploadError):
    """Publishing the merged artifact to its canonical key failed."""


class LeaseLostError(UploadError):
    """The worker's claim on a queue item was superseded by another claim."""

    def __init__(self, item_id: int, attempt: int) -> None:
        super().__init__(f"Lease on queue item {item_id} (attempt {attempt}) was lost")
        self.item_id = item_id
        self.attempt = attempt
