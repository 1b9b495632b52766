from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field

from .base import CamelModel
from .ums import LogicalOperator


# =============================================================================
# CODE GENERATION RESULTS
# =============================================================================

class CqlMetadata(CamelModel):
    value_set_count: int = 0
    population_count: int = 0
    generated_at: Optional[datetime] = None


class CqlGenerationResult(CamelModel):
    success: bool
    cql: str = ""
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    metadata: CqlMetadata = Field(default_factory=CqlMetadata)


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SqlMetadata(CamelModel):
    predicate_count: int = 0
    data_models_used: List[str] = Field(default_factory=list)
    estimated_complexity: Complexity = Complexity.LOW
    dialect: str = ""
    generated_at: Optional[datetime] = None


class SqlGenerationResult(CamelModel):
    success: bool
    sql: str = ""
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    metadata: SqlMetadata = Field(default_factory=SqlMetadata)


class OverrideApplication(CamelModel):
    patched_text: str
    override_count: int = 0


# =============================================================================
# VALIDATION TRACE
# =============================================================================

class NodeStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class FinalOutcome(str, Enum):
    NOT_IN_POPULATION = "not_in_population"
    NOT_IN_NUMERATOR = "not_in_numerator"
    EXCLUDED = "excluded"
    IN_NUMERATOR = "in_numerator"


class Fact(CamelModel):
    """A concrete data point (or its absence) supporting a decision."""
    code: Optional[str] = None
    display: str = ""
    date: Optional[str] = None
    source: str = ""


class ValidationNode(CamelModel):
    id: str
    title: str = ""
    node_type: str = "decision"  # "decision" for elements, "collector" for clauses
    operator: Optional[LogicalOperator] = None
    description: Optional[str] = None
    status: NodeStatus
    facts: List[Fact] = Field(default_factory=list)
    children: Optional[List["ValidationNode"]] = None


ValidationNode.model_rebuild()


class PreCheckResult(CamelModel):
    check_type: str
    met: bool
    description: str = ""


class PopulationResult(CamelModel):
    population_type: str
    met: bool = False
    evaluated: bool = False
    nodes: List[ValidationNode] = Field(default_factory=list)


class ValidationTrace(CamelModel):
    patient_id: str
    patient_name: Optional[str] = None
    final_outcome: FinalOutcome
    pre_check_results: List[PreCheckResult] = Field(default_factory=list)
    population_results: List[PopulationResult] = Field(default_factory=list)
    narrative: str = ""

    def population(self, population_type: str) -> Optional[PopulationResult]:
        for result in self.population_results:
            if result.population_type == population_type:
                return result
        return None


# =============================================================================
# BATCH RESULTS
# =============================================================================

class GenerationItem(CamelModel):
    """One measure's outcome in a batch generation run."""
    measure_id: str
    success: bool
    code: str = ""
    override_count: int = 0
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class CohortItem(CamelModel):
    """One patient's outcome in a cohort evaluation run."""
    patient_id: str
    trace: Optional[ValidationTrace] = None
    error: Optional[str] = None
