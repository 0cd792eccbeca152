"""Exceptions raised by the device-pattern engine."""


class ChargeWatcherError(Exception):
    """Base class for all engine errors."""


class NotFound(ChargeWatcherError):
    """Unknown pattern or session id."""


class InvalidInput(ChargeWatcherError):
    """Rejected before any mutation: blank labels, self-merge, bad ids."""


class InsufficientData(ChargeWatcherError):
    """Too few usable readings to build a power profile."""


class Conflict(ChargeWatcherError):
    """A label is already used by another pattern.

    The host is expected to offer merging into ``existing_id`` instead.
    """

    should_merge = True

    def __init__(self, message: str, existing_id: str) -> None:
        super().__init__(message)
        self.existing_id = existing_id
