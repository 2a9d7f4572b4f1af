"""Exception types shared across gptcli."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad config file, bad flag combination)."""


class TransportError(AgentError):
    """Raised when a completion request fails."""


class Cancelled(AgentError):
    """Raised when the user aborts an outstanding completion request."""


# -- Patch engine ------------------------------------------------------------


class PatchError(ValueError):
    """Base class for structured patch failures.

    ``kind`` is the stable name reported back to the model in tool results.
    """

    kind = "PatchError"


class InvalidRange(PatchError):
    kind = "InvalidRange"


class InvalidLine(PatchError):
    kind = "InvalidLine"


class InvalidPattern(PatchError):
    kind = "InvalidPattern"


class UnsupportedOperation(PatchError):
    kind = "UnsupportedOperation"
