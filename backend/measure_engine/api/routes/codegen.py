import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException

from ...codegen.cql_generator import CqlGenerator
from ...codegen.overrides import apply_overrides
from ...codegen.sql_dialects import get_dialect
from ...codegen.sql_generator import SqlGenerator
from ...core.config import settings
from ...core.errors import MeasureEngineError
from ...schemas.api import BatchGenerationRequest, CqlRequest, CqlResponse, SqlRequest, SqlResponse
from ...schemas.override import TargetFormat
from ...schemas.results import GenerationItem
from ...services.batch import generate_many, sql_target_format
from ...services.override_store import OverrideStore
from ..deps import get_override_store

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/cql", response_model=CqlResponse)
def generate_cql(request: CqlRequest, store: OverrideStore = Depends(get_override_store)):
    """Generate a CQL library for the measure, with recorded overrides applied."""
    measure = request.measure
    result = CqlGenerator().generate(measure)
    if not result.success:
        return CqlResponse(**result.model_dump())

    applied = apply_overrides(
        result.cql, measure, TargetFormat.CQL,
        store.snapshot(measure.key_id, TargetFormat.CQL),
    )
    return CqlResponse(**{
        **result.model_dump(),
        "cql": applied.patched_text,
        "override_count": applied.override_count,
    })


@router.post("/sql", response_model=SqlResponse)
def generate_sql(request: SqlRequest, store: OverrideStore = Depends(get_override_store)):
    """Generate dialect SQL for the measure, with recorded overrides applied."""
    dialect_name = request.dialect or settings.DEFAULT_SQL_DIALECT
    try:
        dialect = get_dialect(dialect_name)
    except MeasureEngineError as e:
        raise HTTPException(status_code=400, detail=str(e))

    measure = request.measure
    result = SqlGenerator().generate(measure, dialect)
    if not result.success:
        return SqlResponse(**result.model_dump())

    target_format = sql_target_format(dialect.name)
    applied = apply_overrides(
        result.sql, measure, target_format,
        store.snapshot(measure.key_id, target_format),
    )
    return SqlResponse(**{
        **result.model_dump(),
        "sql": applied.patched_text,
        "override_count": applied.override_count,
    })


@router.post("/batch", response_model=Dict[str, GenerationItem])
def generate_batch(request: BatchGenerationRequest, store: OverrideStore = Depends(get_override_store)):
    """Generate code for several measures at once."""
    overrides = []
    for measure in request.measures:
        overrides.extend(store.snapshot(measure.key_id))
    try:
        return generate_many(request.measures, request.target_format, request.dialect, overrides)
    except MeasureEngineError as e:
        raise HTTPException(status_code=400, detail=str(e))
