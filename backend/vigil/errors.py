"""
Harness lifecycle errors.
"""


class HarnessError(Exception):
    """Base exception for harness orchestration failures."""

    pass


class HarnessStateError(HarnessError):
    """Operation not valid in the harness's current lifecycle state."""

    pass


class SchedulerUnavailableError(HarnessError):
    """The scheduler has no event loop to run timers on."""

    pass
