"""
Error taxonomy.

Validation problems (wrong choice, wrong event type) are not exceptions: the
dialogue engine answers them with a SendError action and leaves the state alone.
Everything below is raised by adapters and propagated to the caller, except
FileTooLarge, which the webhook answers with a corrective message.
"""

from __future__ import annotations


class PandocBotError(Exception):
    """Base class for all service errors."""


class TransportFailure(PandocBotError):
    """Messenger send, queue publish/consume or media download failed."""


class StorageFailure(PandocBotError):
    """Dialogue state (or a staged blob) could not be read or written."""


class DecodeFailure(PandocBotError):
    """A queue payload is not a valid job envelope."""


class FileTooLarge(PandocBotError):
    """An uploaded file is over max_file_bytes; the user is asked for a smaller one."""

    def __init__(self, max_bytes: int) -> None:
        super().__init__(f"File exceeds max_file_bytes={max_bytes}")
        self.max_bytes = max_bytes
