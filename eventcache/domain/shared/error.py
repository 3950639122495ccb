"""Error hierarchy for eventcache.

Error layers:
- EventCacheError: Base class for all eventcache errors
- WaitTimeoutError: A timed wait gave up and its timeout handler supplied a reason
"""

from typing import Any, Hashable


class EventCacheError(Exception):
    """Base class for all eventcache errors."""

    def __init__(self, message: str, code: str | None = None) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        super().__init__(message)


class WaitTimeoutError(EventCacheError):
    """A wait on an event timed out and the timeout handler returned a reason.

    The handler's return value is kept on ``value`` unchanged.
    """

    def __init__(self, name: Hashable, value: Any) -> None:
        super().__init__(f"Timed out waiting for event {name!r}: {value!r}", code="WAIT_TIMEOUT")
        self.name = name
        self.value = value
