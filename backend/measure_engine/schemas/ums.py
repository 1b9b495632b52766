"""
Universal Measure Specification (UMS) logic tree.

A measure's population criteria are a recursive tree of LogicalClause
(internal) and DataElement (leaf) nodes. The tree is immutable: every
edit produces a new tree (see logic/tree.py).

Documents coming from the editor do not always carry a ``nodeType`` key,
so the union is resolved once at parse time by shape. After parsing all
code dispatches on the Python type.
"""

from datetime import date
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import Discriminator, Field, Tag, field_validator, model_validator

from .base import FrozenCamelModel


# =============================================================================
# ENUMS
# =============================================================================

class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class ElementKind(str, Enum):
    """Clinical category of a data element."""
    DEMOGRAPHIC = "demographic"
    DIAGNOSIS = "diagnosis"
    ENCOUNTER = "encounter"
    PROCEDURE = "procedure"
    OBSERVATION = "observation"
    MEDICATION = "medication"
    IMMUNIZATION = "immunization"
    ASSESSMENT = "assessment"
    DEVICE = "device"
    ALLERGY = "allergy"


# Spellings seen in extracted documents
_ELEMENT_KIND_ALIASES: Dict[str, ElementKind] = {
    "demographics": ElementKind.DEMOGRAPHIC,
    "condition": ElementKind.DIAGNOSIS,
    "problem": ElementKind.DIAGNOSIS,
    "result": ElementKind.OBSERVATION,
    "lab": ElementKind.OBSERVATION,
    "laboratory": ElementKind.OBSERVATION,
    "vaccine": ElementKind.IMMUNIZATION,
    "intervention": ElementKind.PROCEDURE,
}


class PopulationType(str, Enum):
    INITIAL_POPULATION = "initial-population"
    DENOMINATOR = "denominator"
    DENOMINATOR_EXCLUSION = "denominator-exclusion"
    DENOMINATOR_EXCEPTION = "denominator-exception"
    NUMERATOR = "numerator"
    NUMERATOR_EXCLUSION = "numerator-exclusion"
    MEASURE_POPULATION = "measure-population"
    MEASURE_OBSERVATION = "measure-observation"

    @property
    def display_name(self) -> str:
        """Title-cased name used for CQL define statements."""
        return self.value.replace("-", " ").title()

    @property
    def cte_name(self) -> str:
        return self.value.replace("-", "_").upper()


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


# =============================================================================
# VALUE SETS
# =============================================================================

class Code(FrozenCamelModel):
    code: str
    system: str
    display: Optional[str] = None


class ValueSet(FrozenCamelModel):
    id: str
    oid: Optional[str] = None
    name: str
    version: Optional[str] = None
    codes: List[Code] = Field(default_factory=list)

    def duplicate_codes(self) -> List[Code]:
        """Codes appearing more than once (system + code). Diagnostics only."""
        seen = set()
        duplicates = []
        for code in self.codes:
            key = (code.system, code.code)
            if key in seen:
                duplicates.append(code)
            seen.add(key)
        return duplicates


# =============================================================================
# DATA ELEMENT (LEAF)
# =============================================================================

class Thresholds(FrozenCamelModel):
    age_min: Optional[int] = None
    age_max: Optional[int] = None
    value_min: Optional[float] = None
    value_max: Optional[float] = None
    unit: Optional[str] = None


class TimingConstraint(FrozenCamelModel):
    """
    Timing of a data element relative to an anchor.

    operator is one of: during, before end of, after start of, within,
    starts during, ends during, overlaps.
    """
    operator: str = "during"
    anchor: str = "Measurement Period"
    quantity: Optional[int] = None
    unit: Optional[str] = None  # day(s), month(s), year(s)


class DataElement(FrozenCamelModel):
    node_type: str = "element"
    id: str
    element_kind: ElementKind = ElementKind.ASSESSMENT
    description: str = ""
    value_set_refs: List[str] = Field(default_factory=list)
    thresholds: Optional[Thresholds] = None
    timing: Optional[TimingConstraint] = None
    negation: bool = False
    gender_value: Optional[Gender] = None
    review_status: str = "pending"
    confidence: str = "medium"
    library_component_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_editor_shape(cls, data: Any) -> Any:
        """Map the editor's ``type`` / embedded ``valueSet`` keys onto our fields."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "elementKind" not in data and "element_kind" not in data and "type" in data:
            data["elementKind"] = data.pop("type")
        if not data.get("valueSetRefs") and not data.get("value_set_refs"):
            embedded = data.pop("valueSet", None)
            if isinstance(embedded, dict):
                ref = embedded.get("id") or embedded.get("oid")
                if ref:
                    data["valueSetRefs"] = [ref]
        return data

    @field_validator("element_kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _ELEMENT_KIND_ALIASES:
                return _ELEMENT_KIND_ALIASES[lowered]
            if lowered in ElementKind._value2member_map_:
                return lowered
            return ElementKind.ASSESSMENT
        return value


# =============================================================================
# LOGICAL CLAUSE (INTERNAL NODE)
# =============================================================================

class SiblingOverride(FrozenCamelModel):
    from_index: int
    to_index: int
    operator: LogicalOperator


class LogicalClause(FrozenCamelModel):
    """
    Internal node. ``operator`` joins every adjacent pair of children.

    ``sibling_overrides`` is editor-only metadata: it records a pending
    per-pair connective change for display before the editor commits it by
    auto-nesting (logic/tree.change_connective). Code generation and
    evaluation never read it.
    """
    node_type: str = "clause"
    id: str
    operator: LogicalOperator = LogicalOperator.AND
    children: List["LogicNode"] = Field(default_factory=list)
    sibling_overrides: Optional[List[SiblingOverride]] = None
    description: Optional[str] = None
    review_status: str = "pending"
    confidence: str = "medium"

    @model_validator(mode="before")
    @classmethod
    def _accept_editor_shape(cls, data: Any) -> Any:
        if isinstance(data, dict) and "siblingConnections" in data:
            data = dict(data)
            data.setdefault("siblingOverrides", data.pop("siblingConnections"))
        return data


def _node_tag(value: Any) -> str:
    if isinstance(value, LogicalClause):
        return "clause"
    if isinstance(value, DataElement):
        return "element"
    if isinstance(value, dict):
        node_type = value.get("nodeType") or value.get("node_type")
        if node_type in ("element", "clause"):
            return node_type
        return "clause" if "children" in value else "element"
    return "element"


LogicNode = Annotated[
    Union[
        Annotated[DataElement, Tag("element")],
        Annotated[LogicalClause, Tag("clause")],
    ],
    Discriminator(_node_tag),
]

LogicalClause.model_rebuild()


# =============================================================================
# POPULATIONS AND MEASURE
# =============================================================================

class Population(FrozenCamelModel):
    id: str
    type: PopulationType
    description: Optional[str] = None
    criteria: Optional[LogicalClause] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower().replace("_", "-")
        return value


class MeasurementPeriod(FrozenCamelModel):
    start: date
    end: date


class MeasureMetadata(FrozenCamelModel):
    measure_id: str = ""
    title: str = ""
    version: str = "1.0.0"
    steward: Optional[str] = None
    measurement_period: Optional[MeasurementPeriod] = None


class GlobalConstraints(FrozenCamelModel):
    age_min: Optional[int] = None
    age_max: Optional[int] = None
    gender: Optional[Gender] = None


class Measure(FrozenCamelModel):
    id: str = ""
    metadata: MeasureMetadata = Field(default_factory=MeasureMetadata)
    populations: List[Population] = Field(default_factory=list)
    value_sets: List[ValueSet] = Field(default_factory=list)
    global_constraints: Optional[GlobalConstraints] = None

    @property
    def key_id(self) -> str:
        """Identifier used to key overrides: the record id, else the measure id."""
        return self.id or self.metadata.measure_id

    def value_set_index(self) -> Dict[str, ValueSet]:
        """Value sets addressable by id and by oid."""
        index: Dict[str, ValueSet] = {}
        for vs in self.value_sets:
            index[vs.id] = vs
            if vs.oid:
                index.setdefault(vs.oid, vs)
        return index

    def resolve_value_sets(self, element: DataElement) -> List[ValueSet]:
        index = self.value_set_index()
        return [index[ref] for ref in element.value_set_refs if ref in index]

    def find_population(self, population_type: PopulationType) -> Optional[Population]:
        for population in self.populations:
            if population.type == population_type:
                return population
        return None
