"""
CQL Generator

Compiles a UMS measure into a CQL library document:

    header comment
    library / using / include
    valueset declarations (one per value set, codes or not)
    parameter "Measurement Period"
    context Patient
    one define per population, built with the shared tree walk
    one define per data element

Only two conditions abort generation (no populations, blank measure id).
Every other defect is written into the document as a WARNING comment and
reported in ``warnings`` so the draft stays readable for the reviewer.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from ..core.config import settings
from ..logic.tree import required_gender, walk_data_elements
from ..logic.walker import ClauseShape, ClauseVisitor, fold_clause
from ..schemas.results import CqlGenerationResult, CqlMetadata
from ..schemas.ums import (
    DataElement,
    ElementKind,
    LogicalClause,
    LogicalOperator,
    Measure,
    PopulationType,
    TimingConstraint,
    ValueSet,
)
from .text import single_line

logger = logging.getLogger(__name__)


# =============================================================================
# FHIR RETRIEVE SHAPES PER ELEMENT KIND
# =============================================================================

# kind -> (resource type, alias, timing expression, status filter)
_RETRIEVES: Dict[ElementKind, Tuple[str, str, str, Optional[str]]] = {
    ElementKind.DIAGNOSIS: ("Condition", "C", "C.prevalenceInterval()", None),
    ElementKind.ENCOUNTER: ("Encounter", "E", "E.period", "E.status = 'finished'"),
    ElementKind.PROCEDURE: ("Procedure", "P", "P.performed.toInterval()", "P.status = 'completed'"),
    ElementKind.OBSERVATION: ("Observation", "O", "O.effective.toInterval()", "O.status in { 'final', 'amended', 'corrected' }"),
    ElementKind.ASSESSMENT: ("Observation", "O", "O.effective.toInterval()", "O.status in { 'final', 'amended', 'corrected' }"),
    ElementKind.MEDICATION: ("MedicationRequest", "M", "M.authoredOn.toInterval()", "M.status in { 'active', 'completed' }"),
    ElementKind.IMMUNIZATION: ("Immunization", "I", "I.occurrence.toInterval()", "I.status = 'completed'"),
    ElementKind.DEVICE: ("DeviceRequest", "D", "D.authoredOn.toInterval()", None),
    ElementKind.ALLERGY: ("AllergyIntolerance", "A", "A.onset.toInterval()", None),
}

_KIND_LABELS: Dict[ElementKind, str] = {
    ElementKind.DEMOGRAPHIC: "Demographic",
    ElementKind.DIAGNOSIS: "Diagnosis",
    ElementKind.ENCOUNTER: "Encounter",
    ElementKind.PROCEDURE: "Procedure",
    ElementKind.OBSERVATION: "Observation",
    ElementKind.ASSESSMENT: "Assessment",
    ElementKind.MEDICATION: "Medication",
    ElementKind.IMMUNIZATION: "Immunization",
    ElementKind.DEVICE: "Device",
    ElementKind.ALLERGY: "Allergy",
}

_ANCHORS: Dict[str, str] = {
    "Measurement Period": '"Measurement Period"',
    "Measurement Period Start": 'start of "Measurement Period"',
    "Measurement Period End": 'end of "Measurement Period"',
}

_UNITS: Dict[str, str] = {
    "day(s)": "days", "days": "days", "day": "days",
    "month(s)": "months", "months": "months", "month": "months",
    "year(s)": "years", "years": "years", "year": "years",
}


def _quote(identifier: str) -> str:
    return '"' + single_line(identifier).replace('"', "'") + '"'


def library_identifier(measure_id: str) -> str:
    """CQL library names are identifiers: strip everything else."""
    ident = re.sub(r"[^A-Za-z0-9_]", "", measure_id)
    if not ident or ident[0].isdigit():
        ident = "Measure" + ident
    return ident


def value_set_url(vs: ValueSet) -> str:
    if vs.oid:
        return vs.oid if vs.oid.startswith(("urn:", "http")) else f"urn:oid:{vs.oid}"
    return f"urn:uuid:{vs.id}"


def timing_predicate(target: str, timing: Optional[TimingConstraint]) -> Tuple[str, Optional[str]]:
    """
    Translate a timing constraint into a CQL interval predicate over ``target``.

    Returns (expression, warning). Anchors other than the measurement period
    are not defined in the library: they fall back to it and are reported.
    """
    if timing is None:
        return f'{target} during "Measurement Period"', None

    warning = None
    anchor = _ANCHORS.get(timing.anchor)
    if anchor is None:
        anchor = _ANCHORS["Measurement Period"]
        warning = (
            f"timing anchor '{single_line(timing.anchor)}' is not defined in this library; "
            "using the measurement period"
        )

    op = timing.operator.strip().lower()
    if op == "starts during":
        expr = f"start of {target} during {anchor}"
    elif op == "ends during":
        expr = f"end of {target} during {anchor}"
    elif op == "overlaps":
        expr = f"{target} overlaps {anchor}"
    elif op == "before end of":
        expr = f"{target} ends before end of {anchor}"
    elif op == "after start of":
        expr = f"{target} starts after start of {anchor}"
    elif op == "within" and timing.quantity is not None:
        unit = _UNITS.get((timing.unit or "days").strip().lower(), "days")
        expr = f"{target} ends {timing.quantity} {unit} or less before end of {anchor}"
    else:
        expr = f"{target} during {anchor}"
    return expr, warning


# =============================================================================
# POPULATION EXPRESSIONS (shared tree walk)
# =============================================================================

class _ExpressionBuilder(ClauseVisitor[Tuple[str, bool]]):
    """Builds a boolean CQL expression; results are (text, is_compound)."""

    def __init__(self, define_names: Dict[str, str], warnings: List[str]):
        self.define_names = define_names
        self.warnings = warnings

    def visit_element(self, element: DataElement, depth: int) -> Tuple[str, bool]:
        ref = _quote(self.define_names[element.id])
        if element.negation:
            return f"not {ref}", False
        return ref, False

    def combine_clause(
        self,
        clause: LogicalClause,
        shape: ClauseShape,
        child_results: List[Tuple[str, bool]],
        depth: int,
    ) -> Tuple[str, bool]:
        clause_id = single_line(clause.id).replace("*/", "* /")
        if shape.is_empty:
            placeholder = "true" if shape.operator == LogicalOperator.AND else "false"
            self.warnings.append(
                f"{shape.operator.value} clause '{clause_id}' has no children; "
                f"using '{placeholder}'"
            )
            return f"{placeholder} /* WARNING: empty {shape.operator.value} clause '{clause_id}' */", False

        parts = [f"({text})" if compound else text for text, compound in child_results]
        indent = "  " * (depth + 2)

        if shape.operator == LogicalOperator.NOT:
            if shape.is_malformed_not:
                self.warnings.append(
                    f"NOT clause '{clause_id}' has {shape.child_count} children; "
                    "negating their conjunction"
                )
                inner = f"\n{indent}and ".join(parts)
                return (
                    f"not ({inner}) /* WARNING: NOT clause '{clause_id}' "
                    f"has {shape.child_count} children */",
                    False,
                )
            return f"not {parts[0]}" if parts[0].startswith("(") else f"not ({parts[0]})", False

        if len(parts) == 1:
            return child_results[0]

        joiner = "and" if shape.operator == LogicalOperator.AND else "or"
        return f"\n{indent}{joiner} ".join(parts), True


# =============================================================================
# GENERATOR
# =============================================================================

class CqlGenerator:
    """Compiles a Measure into CQL text."""

    def __init__(
        self,
        data_model: Optional[str] = None,
        data_model_version: Optional[str] = None,
        fhir_helpers_version: Optional[str] = None,
    ):
        self.data_model = data_model or settings.CQL_DATA_MODEL
        self.data_model_version = data_model_version or settings.CQL_DATA_MODEL_VERSION
        self.fhir_helpers_version = fhir_helpers_version or settings.FHIR_HELPERS_VERSION

    def generate(self, measure: Measure) -> CqlGenerationResult:
        errors = self._validate(measure)
        metadata = CqlMetadata(
            value_set_count=len(measure.value_sets),
            population_count=len(measure.populations),
            generated_at=datetime.now(timezone.utc),
        )
        if errors:
            for error in errors:
                logger.warning("CQL generation aborted for %r: %s", measure.key_id, error)
            return CqlGenerationResult(success=False, errors=errors, metadata=metadata)

        warnings: List[str] = []
        sections = [
            self._header(measure),
            self._library_block(measure),
            self._value_set_block(measure, warnings),
            self._parameter_block(measure),
            "context Patient",
        ]

        define_names = self._assign_define_names(measure)
        global_define = self._global_constraints_define(measure)
        if global_define:
            sections.append(global_define)

        sections.append(self._population_block(measure, define_names, bool(global_define), warnings))
        element_block = self._element_block(measure, define_names, warnings)
        if element_block:
            sections.append(element_block)

        cql = "\n\n".join(sections) + "\n"
        warnings = list(dict.fromkeys(warnings))
        logger.info(
            "Generated CQL for %s: %d populations, %d value sets, %d warnings",
            measure.metadata.measure_id, len(measure.populations), len(measure.value_sets), len(warnings),
        )
        return CqlGenerationResult(success=True, cql=cql, warnings=warnings, metadata=metadata)

    # -------------------------------------------------------------------------
    # VALIDATION
    # -------------------------------------------------------------------------

    def _validate(self, measure: Measure) -> List[str]:
        errors = []
        if not measure.metadata.measure_id or not measure.metadata.measure_id.strip():
            errors.append("Measure ID is required")
        if not measure.populations:
            errors.append("Measure must have at least one population")
        return errors

    # -------------------------------------------------------------------------
    # SECTIONS
    # -------------------------------------------------------------------------

    def _header(self, measure: Measure) -> str:
        meta = measure.metadata
        lines = [
            "/*",
            f" * Measure: {meta.title or meta.measure_id}",
            f" * Measure ID: {meta.measure_id}",
            f" * Version: {meta.version}",
        ]
        if meta.steward:
            lines.append(f" * Steward: {meta.steward}")
        lines.append(" * Generated from the UMS logic tree. Record manual edits as overrides.")
        lines.append(" */")
        return "\n".join(lines)

    def _library_block(self, measure: Measure) -> str:
        ident = library_identifier(measure.metadata.measure_id)
        return "\n".join([
            f"library {ident} version '{measure.metadata.version}'",
            "",
            f"using {self.data_model} version '{self.data_model_version}'",
            "",
            f"include FHIRHelpers version '{self.fhir_helpers_version}' called FHIRHelpers",
        ])

    def _value_set_block(self, measure: Measure, warnings: List[str]) -> str:
        lines = ["// Value Sets"]
        if not measure.value_sets:
            lines.append("// (none declared)")
        for vs in measure.value_sets:
            if not vs.codes:
                message = f"value set '{single_line(vs.name)}' has no codes"
                warnings.append(message)
                lines.append(f"// WARNING: {message}")
            lines.append(f"valueset {_quote(vs.name)}: '{value_set_url(vs)}'")
        return "\n".join(lines)

    def _parameter_block(self, measure: Measure) -> str:
        period = measure.metadata.measurement_period
        declaration = 'parameter "Measurement Period" Interval<DateTime>'
        if period is not None:
            return (
                f"{declaration}\n"
                f"  default Interval[@{period.start.isoformat()}T00:00:00.0, "
                f"@{period.end.isoformat()}T23:59:59.999]"
            )
        if settings.DEFAULT_MEASUREMENT_YEAR:
            year = settings.DEFAULT_MEASUREMENT_YEAR
            return (
                f"{declaration}\n"
                f"  default Interval[@{year}-01-01T00:00:00.0, @{year}-12-31T23:59:59.999]"
            )
        return declaration

    def _global_constraints_define(self, measure: Measure) -> Optional[str]:
        gc = measure.global_constraints
        if gc is None:
            return None
        terms = []
        if gc.age_min is not None:
            terms.append(f'AgeInYearsAt(date from end of "Measurement Period") >= {gc.age_min}')
        if gc.age_max is not None:
            terms.append(f'AgeInYearsAt(date from start of "Measurement Period") <= {gc.age_max}')
        if gc.gender is not None:
            terms.append(f"Patient.gender = '{gc.gender.value}'")
        if not terms:
            return None
        return 'define "Meets Global Constraints":\n  ' + "\n    and ".join(terms)

    def _population_block(
        self,
        measure: Measure,
        define_names: Dict[str, str],
        has_global: bool,
        warnings: List[str],
    ) -> str:
        builder = _ExpressionBuilder(define_names, warnings)
        blocks = ["// Populations"]
        used_names: Dict[str, int] = {}

        for population in measure.populations:
            name = population.type.display_name
            used_names[name] = used_names.get(name, 0) + 1
            if used_names[name] > 1:
                name = f"{name} {used_names[name]}"

            if population.criteria is None:
                message = f"population '{population.type.value}' has no criteria"
                warnings.append(message)
                blocks.append(f"define {_quote(name)}:\n  false // WARNING: {message}")
                continue

            text, compound = fold_clause(population.criteria, builder)
            if has_global and population.type == PopulationType.INITIAL_POPULATION:
                body = f'"Meets Global Constraints"\n    and ({text})' if compound else f'"Meets Global Constraints"\n    and {text}'
            else:
                body = text
            blocks.append(f"define {_quote(name)}:\n  {body}")

        return "\n\n".join(blocks)

    # -------------------------------------------------------------------------
    # DATA ELEMENTS
    # -------------------------------------------------------------------------

    def _assign_define_names(self, measure: Measure) -> Dict[str, str]:
        """Stable, unique define name per element id, in tree order."""
        names: Dict[str, str] = {}
        taken: Dict[str, int] = {}
        for population in measure.populations:
            if population.criteria is None:
                continue
            for element in walk_data_elements(population.criteria):
                if element.id in names:
                    continue
                label = _KIND_LABELS[element.element_kind]
                base = single_line(f"{label}: {element.description.strip() or element.id}")
                taken[base] = taken.get(base, 0) + 1
                names[element.id] = base if taken[base] == 1 else f"{base} ({taken[base]})"
        return names

    def _element_block(self, measure: Measure, define_names: Dict[str, str], warnings: List[str]) -> str:
        blocks = []
        emitted = set()
        for population in measure.populations:
            if population.criteria is None:
                continue
            for element in walk_data_elements(population.criteria):
                if element.id in emitted:
                    continue
                emitted.add(element.id)
                blocks.append(self._element_define(measure, element, define_names[element.id], warnings))
        if not blocks:
            return ""
        return "// Data Elements\n" + "\n\n".join(blocks)

    def _element_define(self, measure: Measure, element: DataElement, name: str, warnings: List[str]) -> str:
        label = single_line(element.description or element.id)
        if element.element_kind == ElementKind.DEMOGRAPHIC:
            return self._demographic_define(element, label, name, warnings)

        value_sets = measure.resolve_value_sets(element)
        if not value_sets:
            # same truth value as the SQL placeholder: nobody matches
            message = f"no value set attached to '{label}'; matching no patients"
            warnings.append(message)
            return f"// WARNING: {message}\ndefine {_quote(name)}:\n  false"

        resource, alias, timing_target, status_filter = _RETRIEVES[element.element_kind]
        retrieves = [f"[{resource}: {_quote(vs.name)}]" for vs in value_sets]
        source = retrieves[0] if len(retrieves) == 1 else "(" + " union ".join(retrieves) + ")"

        conditions = []
        if status_filter:
            conditions.append(status_filter)
        timing_expr, timing_warning = timing_predicate(timing_target, element.timing)
        conditions.append(timing_expr)
        if timing_warning:
            warnings.append(timing_warning)

        if element.thresholds and element.element_kind in (ElementKind.OBSERVATION, ElementKind.ASSESSMENT):
            unit = element.thresholds.unit or "1"
            if element.thresholds.value_min is not None:
                conditions.append(f"({alias}.value as Quantity) >= {element.thresholds.value_min:g} '{unit}'")
            if element.thresholds.value_max is not None:
                conditions.append(f"({alias}.value as Quantity) <= {element.thresholds.value_max:g} '{unit}'")

        where = "\n      and ".join(conditions)
        lines = []
        empty = [single_line(vs.name) for vs in value_sets if not vs.codes]
        if empty:
            lines.append(f"// WARNING: value set(s) without codes: {', '.join(empty)}")
        lines.append(f"define {_quote(name)}:")
        lines.append(f"  exists ({source} {alias}\n    where {where}\n  )")
        return "\n".join(lines)

    def _demographic_define(self, element: DataElement, label: str, name: str, warnings: List[str]) -> str:
        terms = []
        gender = required_gender(element)
        if gender is not None:
            terms.append(f"Patient.gender = '{gender.value}'")
        thresholds = element.thresholds
        if thresholds is not None:
            if thresholds.age_min is not None:
                terms.append(f'AgeInYearsAt(date from end of "Measurement Period") >= {thresholds.age_min}')
            if thresholds.age_max is not None:
                terms.append(f'AgeInYearsAt(date from start of "Measurement Period") <= {thresholds.age_max}')
        if not terms:
            message = f"demographic element '{label}' has no constraint"
            warnings.append(message)
            return f"// WARNING: {message}\ndefine {_quote(name)}:\n  true"
        return f"define {_quote(name)}:\n  " + "\n    and ".join(terms)


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def generate_cql(measure: Measure) -> CqlGenerationResult:
    """Generate CQL with the configured data model."""
    return CqlGenerator().generate(measure)
