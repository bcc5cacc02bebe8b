"""Exception hierarchy for the parse pipeline and its collaborators."""


class MdnoteError(Exception):
    """Base class for every error raised by mdnote."""


# ── Preconditions (fatal, never retried) ─────────────────────────────


class PreconditionError(MdnoteError):
    """A required input or collaborator is missing before any work starts."""


class ConverterUnavailableError(PreconditionError):
    pass


class MissingTokenError(PreconditionError):
    pass


class FileTooLargeError(PreconditionError):
    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"File exceeds {limit // (1024 * 1024)}MB: {round(size / 1024 / 1024)}MB"
        )


class SourceFileMissingError(PreconditionError):
    pass


# ── Remote service ───────────────────────────────────────────────────


class RemoteError(MdnoteError):
    """Malformed response, non-2xx status, or a remote-reported failure."""


class RemoteTimeoutError(RemoteError):
    """Polling exceeded the configured timeout."""


# ── Cancellation ─────────────────────────────────────────────────────


class ParseCancelled(MdnoteError):
    """Raised at a cancellation checkpoint once cancellation was requested."""

    def __init__(self, message: str = "Cancelled"):
        super().__init__(message)


# ── Local result files ───────────────────────────────────────────────


class ResultFileError(MdnoteError):
    """The result bundle is corrupt or the Markdown result is missing."""


class UnsafeArchiveError(ResultFileError):
    """The result bundle contains a path that escapes the output directory."""
