from typing import List, Optional

from pydantic import Field

from .base import CamelModel
from .override import TargetFormat
from .patient import PatientRecord
from .results import CqlGenerationResult, SqlGenerationResult
from .ums import LogicalClause, LogicalOperator, Measure


class CqlRequest(CamelModel):
    measure: Measure


class SqlRequest(CamelModel):
    measure: Measure
    dialect: Optional[str] = Field(None, description="'hdi' or 'synapse'; defaults to the configured dialect")


class BatchGenerationRequest(CamelModel):
    measures: List[Measure]
    target_format: TargetFormat = TargetFormat.CQL
    dialect: Optional[str] = None


class CqlResponse(CqlGenerationResult):
    """CQL result with the override audit block applied to ``cql``."""
    override_count: int = 0


class SqlResponse(SqlGenerationResult):
    """SQL result with the override audit block applied to ``sql``."""
    override_count: int = 0


class ConnectiveRequest(CamelModel):
    """Change the connective between children[index] and children[index + 1]."""
    clause: LogicalClause
    clause_id: Optional[str] = Field(None, description="Nested clause to edit; the root when omitted")
    index: int
    operator: LogicalOperator


class DiagnosticsRequest(CamelModel):
    measure: Measure


class DiagnosticOut(CamelModel):
    code: str
    message: str
    node_id: Optional[str] = None


class OverrideEditRequest(CamelModel):
    measure_id: str
    component_id: str
    target_format: TargetFormat
    generated_snippet: str
    patched_snippet: str
    comment: str = ""
    author: str = "User"
    change_type: Optional[str] = None


class EvaluateRequest(CamelModel):
    patient: PatientRecord
    measure: Measure


class CohortRequest(CamelModel):
    patients: List[PatientRecord]
    measure: Measure
