"""
Exception types raised by the chat pipeline.

Retrieval and accounting failures are deliberately absent: those are
logged and absorbed where they happen and never reach the caller.
"""


class MedChatError(Exception):
    """Base class for every error this package raises on purpose."""


class UpstreamError(MedChatError):
    """The language model provider failed or answered with an unusable payload."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidInputError(MedChatError):
    """Caller input rejected before any network call was made."""


class PromptTemplateError(MedChatError):
    """A prompt template still has placeholders, or was given unknown ones."""


class ConfigurationError(MedChatError):
    """A setting required for the requested operation is missing."""


class ForwardingError(MedChatError):
    """The forwarding webhook rejected the payload or was unreachable."""
