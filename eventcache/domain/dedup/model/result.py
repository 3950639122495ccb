"""Tagged results broadcast to single-flight waiters."""

from enum import Enum
from typing import Any

from eventcache.domain.shared.model.value import ValueObject


class Outcome(Enum):
    """How a producer settled."""

    SUCCESS = "success"
    FAILURE = "failure"


class FailureMode(str, Enum):
    """How a producer failure reaches waiters of a single-flight call.

    REJECT raises the producer's exception in every waiter. RESOLVE returns
    the exception object as the call's result, for callers that depend on
    the legacy behavior.
    """

    REJECT = "reject"
    RESOLVE = "resolve"


class TaggedResult(ValueObject):
    """Producer result (or exception) plus the outcome that produced it."""

    outcome: Outcome
    data: Any = None
