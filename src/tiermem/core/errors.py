"""
Core exception classes
"""


class MemoryPipelineError(Exception):
    """Base class for every error raised inside the memory pipeline."""


class ValidationError(MemoryPipelineError):
    """Input rejected before any external call.

    Raised for empty or missing content, unknown identifiers and vectors
    whose dimensionality does not match the declared class.
    """


class ProviderError(MemoryPipelineError):
    """Embedding or completion provider failure (timeout, HTTP error, bad payload).

    Attributes:
        retryable: whether the queue should try the job again
    """

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class IndexUnavailable(MemoryPipelineError):
    """The vector index could not be reached.

    Writes that hit this error leave their records in ``pending_index`` for
    the reconciliation sweep.
    """


class ParseError(MemoryPipelineError):
    """A completion could not be parsed into the expected structure.

    Attributes:
        raw: the unparsed model output (truncated)
    """

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw[:200]
        super().__init__(message)
