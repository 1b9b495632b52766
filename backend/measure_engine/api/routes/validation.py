from typing import Dict

from fastapi import APIRouter

from ...evaluation.evaluator import MeasureEvaluator
from ...schemas.api import CohortRequest, EvaluateRequest
from ...schemas.results import CohortItem, ValidationTrace
from ...services.batch import evaluate_cohort

router = APIRouter()


@router.post("/evaluate", response_model=ValidationTrace)
def evaluate(request: EvaluateRequest):
    """Run one test patient through the measure's population funnel."""
    return MeasureEvaluator().evaluate(request.patient, request.measure)


@router.post("/evaluate-cohort", response_model=Dict[str, CohortItem])
def evaluate_many(request: CohortRequest):
    """Evaluate a cohort of test patients; results are keyed by patient id."""
    return evaluate_cohort(request.patients, request.measure)
