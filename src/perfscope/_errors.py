"""Exception taxonomy for perfscope.

Misuse (wrong state, missing config) and environment failures are raised to
the caller. Data-quality problems during a flush are absorbed by the
controller and never leave this package.
"""


class PerfscopeError(Exception):
    """Base class for all perfscope errors."""


class AdapterUnavailable(PerfscopeError):
    """The sampling facility cannot be reached in this process.

    Not retried. The message carries the remediation hint.
    """


class SessionStateError(PerfscopeError):
    """An operation was called in a state that does not allow it."""


class AlreadyRunning(SessionStateError):
    pass


class NotRunning(SessionStateError):
    pass


class MissingRequiredConfig(PerfscopeError, ValueError):
    """A mandatory configuration value was not supplied."""


class ExtractionError(PerfscopeError):
    """Raw profile data could not be turned into insights.

    Raised by the extractor, caught by the controller which degrades to
    empty result lists.
    """
