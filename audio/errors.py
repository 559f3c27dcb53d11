from __future__ import annotations


class PlaybackError(RuntimeError):
    pass


class DecodeError(PlaybackError):
    """Local bytes could not be decoded into playable audio."""


class StreamConnectError(PlaybackError):
    """The media handle failed before or during metadata resolution."""

    def __init__(self, message: str, details: str = ""):
        super().__init__(message)
        self.details = details or message


class SupersededLoad(PlaybackError):
    """A pending load was overtaken by a newer one. Never reaches callers."""


class OutputError(PlaybackError):
    pass
