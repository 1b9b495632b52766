"""
Evaluation Module

Runs synthetic patients through a measure's population funnel and
produces validation traces.
"""

from .evaluator import (
    # Main classes
    MeasureEvaluator,
    ElementMatcher,

    # Data classes
    LeafResult,
    MeasurementPeriod,

    # Convenience functions
    evaluate_patient,
    measurement_period_for,
)

__all__ = [
    "MeasureEvaluator",
    "ElementMatcher",
    "LeafResult",
    "MeasurementPeriod",
    "evaluate_patient",
    "measurement_period_for",
]
