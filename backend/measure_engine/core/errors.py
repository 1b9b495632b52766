"""
Exception types raised by the measure engine.

IR defects never raise: generators degrade to warnings and the evaluator
records failing nodes. These exceptions cover caller mistakes only.
"""


class MeasureEngineError(Exception):
    """Base class for engine errors."""


class UnknownDialectError(MeasureEngineError):
    """Raised when a SQL dialect name is not registered."""

    def __init__(self, name: str, available: list):
        self.name = name
        self.available = available
        super().__init__(
            f"Unknown SQL dialect '{name}'. Available: {', '.join(available)}"
        )


class UnknownTargetFormatError(MeasureEngineError):
    """Raised when an override or generation request names an unsupported format."""


class OverrideNotFoundError(MeasureEngineError):
    """Raised when reverting an override that does not exist."""

    def __init__(self, key):
        self.key = key
        super().__init__(f"No override recorded for {key}")
