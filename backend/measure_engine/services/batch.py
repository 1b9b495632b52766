"""
Batch generation and cohort evaluation.

The engine calls are pure, so a batch is a parallel map. A failure on one
item is recorded against that item and never stops the rest.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Sequence

from ..codegen.cql_generator import CqlGenerator
from ..codegen.overrides import apply_overrides
from ..codegen.sql_dialects import get_dialect
from ..codegen.sql_generator import SqlGenerator
from ..core.config import settings
from ..core.errors import UnknownTargetFormatError
from ..evaluation.evaluator import MeasureEvaluator
from ..schemas.override import Override, TargetFormat
from ..schemas.patient import PatientRecord
from ..schemas.results import CohortItem, GenerationItem
from ..schemas.ums import Measure

logger = logging.getLogger(__name__)


def sql_target_format(dialect: str) -> TargetFormat:
    """Override format carried by SQL generated for a dialect."""
    try:
        return TargetFormat(f"{dialect}-sql")
    except ValueError:
        return TargetFormat.SQL


def _generate_one(
    measure: Measure,
    target_format: TargetFormat,
    dialect: Optional[str],
    overrides: Sequence[Override],
) -> GenerationItem:
    if target_format == TargetFormat.CQL:
        result = CqlGenerator().generate(measure)
        code = result.cql
    else:
        dialect_name = dialect or settings.DEFAULT_SQL_DIALECT
        if target_format in (TargetFormat.HDI_SQL, TargetFormat.SYNAPSE_SQL):
            dialect_name = target_format.value[: -len("-sql")]
        result = SqlGenerator().generate(measure, get_dialect(dialect_name))
        code = result.sql

    override_count = 0
    if result.success:
        applied = apply_overrides(code, measure, target_format, overrides)
        code, override_count = applied.patched_text, applied.override_count

    return GenerationItem(
        measure_id=measure.key_id,
        success=result.success,
        code=code,
        override_count=override_count,
        warnings=result.warnings,
        errors=result.errors,
    )


def generate_many(
    measures: Iterable[Measure],
    target_format: TargetFormat,
    dialect: Optional[str] = None,
    overrides: Sequence[Override] = (),
    max_workers: Optional[int] = None,
) -> Dict[str, GenerationItem]:
    """Generate code for every measure, keyed by measure id."""
    try:
        target_format = TargetFormat(target_format)
    except ValueError:
        raise UnknownTargetFormatError(f"Unsupported target format '{target_format}'")

    measures = list(measures)
    overrides = list(overrides)
    results: Dict[str, GenerationItem] = {}

    with ThreadPoolExecutor(max_workers=max_workers or settings.BATCH_MAX_WORKERS) as pool:
        futures = [
            (measure, pool.submit(_generate_one, measure, target_format, dialect, overrides))
            for measure in measures
        ]
        for measure, future in futures:
            try:
                results[measure.key_id] = future.result()
            except Exception as e:
                logger.exception("Generation failed for measure %r", measure.key_id)
                results[measure.key_id] = GenerationItem(
                    measure_id=measure.key_id,
                    success=False,
                    errors=[str(e)],
                )

    failed = sum(1 for item in results.values() if not item.success)
    logger.info("Batch %s generation: %d measures, %d failed", target_format.value, len(measures), failed)
    return results


def evaluate_cohort(
    patients: Iterable[PatientRecord],
    measure: Measure,
    max_workers: Optional[int] = None,
) -> Dict[str, CohortItem]:
    """Evaluate every patient against one measure, keyed by patient id."""
    patients: List[PatientRecord] = list(patients)
    evaluator = MeasureEvaluator()
    results: Dict[str, CohortItem] = {}

    with ThreadPoolExecutor(max_workers=max_workers or settings.BATCH_MAX_WORKERS) as pool:
        futures = [(patient, pool.submit(evaluator.evaluate, patient, measure)) for patient in patients]
        for patient, future in futures:
            try:
                results[patient.id] = CohortItem(patient_id=patient.id, trace=future.result())
            except Exception as e:
                logger.exception("Evaluation failed for patient %r", patient.id)
                results[patient.id] = CohortItem(patient_id=patient.id, error=str(e))

    logger.info("Evaluated %d patients against %s", len(patients), measure.key_id)
    return results
