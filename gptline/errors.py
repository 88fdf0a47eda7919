"""
Error taxonomy.

Every failure the CLI can report maps to one of these, and each carries the
exit status the process terminates with.
"""


class GptlineError(Exception):
    """Base for all gptline failures."""

    exit_code = 1


class InvalidRequest(GptlineError):
    """Required input is missing. Raised before any network activity."""

    exit_code = 2


class StorageUnavailable(GptlineError):
    """Cache or conversation directory cannot be created, read or written."""

    exit_code = 3


class TransportError(GptlineError):
    """Connection-level failure talking to the API."""

    exit_code = 4


class UpstreamError(GptlineError):
    """The API returned a structured error, in the stream or instead of it."""

    exit_code = 5


class NotFound(GptlineError):
    """No saved conversation carries the requested title."""

    exit_code = 6
