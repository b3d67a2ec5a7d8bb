# QueryBridge/core_logic/errors.py


class QueryBridgeError(Exception):
    """Base class for errors raised by the federation pipeline."""


class PlanParseError(QueryBridgeError, ValueError):
    """The planner's completion could not be turned into a valid QueryPlan."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class CompletionError(QueryBridgeError):
    """A non-quota failure of the completion capability."""


class QuotaExhaustedError(CompletionError):
    """Every credential in the pool hit its quota."""
