"""
Measure Evaluator

Runs one synthetic patient through a measure's population funnel and
records a validation trace a reviewer can read:

    pre-checks (global gender / age constraints)
    initial population -> denominator -> exclusions -> numerator
    (denominator exceptions, when defined, after the numerator)

Each data element is decided by a per-kind matcher (value-set codes first,
then a fuzzy description match), each clause by the shared boolean
reduction. The evaluator never raises on malformed measures or records:
missing data is a failing node with a NO_MATCH fact.
"""

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..core.config import settings
from ..logic.tree import required_gender
from ..logic.walker import ClauseShape, ClauseVisitor, combine_operator_results, fold_clause
from ..schemas.patient import ClinicalEvent, PatientRecord
from ..schemas.results import (
    Fact,
    FinalOutcome,
    NodeStatus,
    PopulationResult,
    PreCheckResult,
    ValidationNode,
    ValidationTrace,
)
from ..schemas.ums import (
    DataElement,
    ElementKind,
    Gender,
    LogicalClause,
    Measure,
    Population,
    PopulationType,
    TimingConstraint,
)

logger = logging.getLogger(__name__)

NO_MATCH = "NO_MATCH"


# =============================================================================
# DATES
# =============================================================================

@dataclass(frozen=True)
class MeasurementPeriod:
    start: date
    end: date

    def contains(self, day: Optional[date]) -> bool:
        return day is not None and self.start <= day <= self.end


def measurement_period_for(measure: Measure, today: Optional[date] = None) -> MeasurementPeriod:
    """The measure's own period, else a calendar year (configured or current)."""
    period = measure.metadata.measurement_period
    if period is not None:
        return MeasurementPeriod(period.start, period.end)
    year = settings.DEFAULT_MEASUREMENT_YEAR or (today or date.today()).year
    return MeasurementPeriod(date(year, 1, 1), date(year, 12, 31))


def age_on(birth_date: date, on: date) -> int:
    """Completed years between birth_date and on."""
    years = on.year - birth_date.year
    if (on.month, on.day) < (birth_date.month, birth_date.day):
        years -= 1
    return years


def _months_before(day: date, months: int) -> date:
    month_index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def window_start(end: date, quantity: int, unit: Optional[str]) -> date:
    unit = (unit or "days").strip().lower().replace("(s)", "").rstrip("s")
    if unit == "year":
        return _months_before(end, 12 * quantity)
    if unit == "month":
        return _months_before(end, quantity)
    if unit == "week":
        return end - timedelta(weeks=quantity)
    return end - timedelta(days=quantity)


def timing_satisfied(
    event: ClinicalEvent,
    timing: Optional[TimingConstraint],
    period: MeasurementPeriod,
) -> bool:
    """
    Check an event's dates against the element's timing.

    Anchors other than the measurement period are not modelled and are read
    as the measurement period. Events without a date never satisfy timing.
    """
    start = event.date
    if start is None:
        return False
    end = event.end_date or start
    op = (timing.operator if timing else "during").strip().lower()

    if op == "ends during":
        return period.contains(end)
    if op == "overlaps":
        return start <= period.end and end >= period.start
    if op == "before end of":
        return start < period.end
    if op == "after start of":
        return start > period.start
    if op == "within" and timing.quantity is not None:
        return window_start(period.end, timing.quantity, timing.unit) <= start <= period.end
    return period.contains(start)


# =============================================================================
# LEAF MATCHING
# =============================================================================

@dataclass
class LeafResult:
    """Outcome of one data element before negation is applied."""
    met: bool
    facts: List[Fact] = field(default_factory=list)


def matches_description(description: str, display: Optional[str]) -> bool:
    """Fuzzy match: any description word longer than three letters appears in display."""
    if not description or not display:
        return False
    display_lower = display.lower()
    return any(
        len(word) > 3 and word in display_lower
        for word in description.lower().split()
    )


def matches_gender(patient_gender: Optional[str], required: Optional[Gender]) -> bool:
    if required is None:
        return True
    if not patient_gender:
        return False
    return patient_gender.strip().lower() == required.value


# event list attribute, fact source, noun used in NO_MATCH facts
_EVENT_SOURCES: Dict[str, Tuple[str, str]] = {
    "diagnoses": ("Problem List", "diagnosis"),
    "encounters": ("Encounters", "encounter"),
    "procedures": ("Procedures", "procedure"),
    "observations": ("Observations", "observation"),
    "medications": ("Medications", "medication"),
    "immunizations": ("Immunizations", "immunization"),
}


class ElementMatcher:
    """
    Decides single data elements against a patient record.

    Routing mirrors the element kinds: each kind has its own matcher, and
    kinds without patient data of their own (assessment, device, allergy)
    search diagnoses, encounters, procedures and observations in turn.
    """

    def __init__(self, measure: Measure, period: MeasurementPeriod):
        self.measure = measure
        self.period = period
        self._value_set_index = measure.value_set_index()

    def evaluate(self, element: DataElement, patient: PatientRecord) -> LeafResult:
        matchers: Dict[ElementKind, Callable[[DataElement, PatientRecord], LeafResult]] = {
            ElementKind.DEMOGRAPHIC: self._match_demographic,
            ElementKind.DIAGNOSIS: lambda e, p: self._match_events(e, p, "diagnoses"),
            ElementKind.ENCOUNTER: lambda e, p: self._match_events(e, p, "encounters"),
            ElementKind.PROCEDURE: lambda e, p: self._match_events(e, p, "procedures"),
            ElementKind.OBSERVATION: self._match_observation,
            ElementKind.MEDICATION: lambda e, p: self._match_events(e, p, "medications"),
            ElementKind.IMMUNIZATION: self._match_immunization,
        }
        matcher = matchers.get(element.element_kind, self._match_any)
        return matcher(element, patient)

    # -------------------------------------------------------------------------
    # CODES
    # -------------------------------------------------------------------------

    def codes_for(self, element: DataElement) -> Set[str]:
        codes: Set[str] = set()
        for ref in element.value_set_refs:
            vs = self._value_set_index.get(ref)
            if vs is not None:
                codes.update(code.code for code in vs.codes)
        return codes

    def _find_event(
        self,
        element: DataElement,
        events: List[ClinicalEvent],
        accept: Callable[[ClinicalEvent], bool],
    ) -> Optional[ClinicalEvent]:
        """First event matching by code, else first matching by description."""
        codes = self.codes_for(element)
        by_code = [e for e in events if e.code and e.code in codes and accept(e)]
        if by_code:
            return by_code[0]
        for event in events:
            if matches_description(element.description, event.display) and accept(event):
                return event
        return None

    @staticmethod
    def _event_fact(event: ClinicalEvent, source: str, display: Optional[str] = None) -> Fact:
        return Fact(
            code=event.code,
            display=display or event.display or "",
            date=event.date.isoformat() if event.date else None,
            source=source,
        )

    @staticmethod
    def _no_match(element: DataElement, noun: str) -> Fact:
        return Fact(
            code=NO_MATCH,
            display=f"No matching {noun} found for: {element.description or element.id}",
            source=f"{noun.title()} Evaluation",
        )

    # -------------------------------------------------------------------------
    # MATCHERS
    # -------------------------------------------------------------------------

    def _match_events(self, element: DataElement, patient: PatientRecord, attribute: str) -> LeafResult:
        source, noun = _EVENT_SOURCES[attribute]
        events = getattr(patient, attribute)
        event = self._find_event(
            element, events,
            lambda e: timing_satisfied(e, element.timing, self.period),
        )
        if event is None:
            return LeafResult(False, [self._no_match(element, noun)])
        return LeafResult(True, [self._event_fact(event, source)])

    def _match_observation(self, element: DataElement, patient: PatientRecord) -> LeafResult:
        thresholds = element.thresholds

        def accept(event: ClinicalEvent) -> bool:
            if not timing_satisfied(event, element.timing, self.period):
                return False
            if thresholds is None or (thresholds.value_min is None and thresholds.value_max is None):
                return True
            value = event.numeric_value
            if value is None:
                return False
            if thresholds.value_min is not None and value < thresholds.value_min:
                return False
            if thresholds.value_max is not None and value > thresholds.value_max:
                return False
            return True

        event = self._find_event(element, patient.observations, accept)
        if event is None:
            return LeafResult(False, [self._no_match(element, "observation")])
        display = event.display or ""
        if event.value is not None:
            display = f"{display}: {event.value}" + (f" {event.unit}" if event.unit else "")
        return LeafResult(True, [self._event_fact(event, "Observations", display)])

    def _match_immunization(self, element: DataElement, patient: PatientRecord) -> LeafResult:
        def accept(event: ClinicalEvent) -> bool:
            if (event.status or "").lower() != "completed":
                return False
            # Immunizations count at any date unless the element constrains timing
            return element.timing is None or timing_satisfied(event, element.timing, self.period)

        event = self._find_event(element, patient.immunizations, accept)
        if event is None:
            return LeafResult(False, [self._no_match(element, "immunization")])
        return LeafResult(True, [self._event_fact(event, "Immunizations")])

    def _match_any(self, element: DataElement, patient: PatientRecord) -> LeafResult:
        for attribute in ("diagnoses", "encounters", "procedures"):
            result = self._match_events(element, patient, attribute)
            if result.met:
                return result
        result = self._match_observation(element, patient)
        if result.met:
            return result
        return LeafResult(False, [self._no_match(element, "record")])

    def _match_demographic(self, element: DataElement, patient: PatientRecord) -> LeafResult:
        facts: List[Fact] = []
        met = True

        gender = required_gender(element)
        if gender is not None:
            gender_met = matches_gender(patient.gender, gender)
            relation = "matches" if gender_met else "does not match"
            facts.append(Fact(
                code="sex",
                display=f"Patient sex ({patient.gender or 'unknown'}) {relation} required ({gender.value})",
                source="Demographics",
            ))
            met = gender_met

        thresholds = element.thresholds
        has_age = thresholds is not None and (thresholds.age_min is not None or thresholds.age_max is not None)
        if gender is not None and not has_age:
            return LeafResult(met, facts)

        if patient.birth_date is None:
            facts.append(Fact(code=NO_MATCH, display="Patient birth date is unknown", source="Demographics"))
            return LeafResult(False, facts)

        age_start = age_on(patient.birth_date, self.period.start)
        age_end = age_on(patient.birth_date, self.period.end)
        facts.append(Fact(
            code="AGE",
            display=f"Age: {age_start} at MP start, {age_end} at MP end",
            source="Demographics",
        ))
        if has_age:
            if thresholds.age_min is not None and age_end < thresholds.age_min:
                met = False
            if thresholds.age_max is not None and age_start > thresholds.age_max:
                met = False
        return LeafResult(met, facts)


# =============================================================================
# CLAUSES (shared tree walk)
# =============================================================================

class _TraceBuilder(ClauseVisitor[Tuple[bool, ValidationNode]]):
    """Folds a clause into (met, node) pairs."""

    _KIND_TITLES = {
        ElementKind.DEMOGRAPHIC: "Demographic",
        ElementKind.DIAGNOSIS: "Diagnosis",
        ElementKind.ENCOUNTER: "Encounter",
        ElementKind.PROCEDURE: "Procedure",
        ElementKind.OBSERVATION: "Observation",
        ElementKind.MEDICATION: "Medication",
        ElementKind.IMMUNIZATION: "Immunization",
        ElementKind.ASSESSMENT: "Assessment",
        ElementKind.DEVICE: "Device",
        ElementKind.ALLERGY: "Allergy",
    }

    def __init__(self, matcher: ElementMatcher, patient: PatientRecord):
        self.matcher = matcher
        self.patient = patient

    def visit_element(self, element: DataElement, depth: int) -> Tuple[bool, ValidationNode]:
        result = self.matcher.evaluate(element, self.patient)
        met = not result.met if element.negation else result.met
        facts = list(result.facts)
        if element.negation:
            facts.append(Fact(
                code="NEGATION",
                display="Element is negated: the patient must not have this data",
                source="Logic",
            ))
        node = ValidationNode(
            id=element.id,
            title=f"{self._KIND_TITLES[element.element_kind]}: {element.description or element.id}",
            node_type="decision",
            description=element.description,
            status=NodeStatus.PASS if met else NodeStatus.FAIL,
            facts=facts,
        )
        return met, node

    def combine_clause(
        self,
        clause: LogicalClause,
        shape: ClauseShape,
        child_results: List[Tuple[bool, ValidationNode]],
        depth: int,
    ) -> Tuple[bool, ValidationNode]:
        met = combine_operator_results(shape.operator, [m for m, _ in child_results])
        node = ValidationNode(
            id=clause.id,
            title=clause.description or f"{shape.operator.value} clause",
            node_type="collector",
            operator=shape.operator,
            description=clause.description,
            status=NodeStatus.PASS if met else NodeStatus.FAIL,
            children=[n for _, n in child_results],
        )
        return met, node


# =============================================================================
# FUNNEL
# =============================================================================

class MeasureEvaluator:
    """Evaluates patients against a measure's population funnel."""

    def __init__(self, today: Optional[date] = None):
        self.today = today

    def evaluate(self, patient: PatientRecord, measure: Measure) -> ValidationTrace:
        period = measurement_period_for(measure, self.today)
        matcher = ElementMatcher(measure, period)
        builder = _TraceBuilder(matcher, patient)

        pre_checks = [
            self._check_gender(patient, measure),
            self._check_age(patient, measure, period),
        ]
        pre_checks_passed = all(check.met for check in pre_checks)

        ip_pop = measure.find_population(PopulationType.INITIAL_POPULATION)
        den_pop = measure.find_population(PopulationType.DENOMINATOR)
        excl_pop = measure.find_population(PopulationType.DENOMINATOR_EXCLUSION)
        num_pop = measure.find_population(PopulationType.NUMERATOR)
        exc_pop = measure.find_population(PopulationType.DENOMINATOR_EXCEPTION)

        # Initial population
        if not pre_checks_passed:
            ip = self._not_reached(PopulationType.INITIAL_POPULATION)
        elif ip_pop is None:
            ip = PopulationResult(
                population_type=PopulationType.INITIAL_POPULATION.value,
                met=True,
                evaluated=True,
            )
        else:
            ip = self._evaluate_population(ip_pop, builder)

        # Denominator
        if not ip.met:
            den = self._not_reached(PopulationType.DENOMINATOR)
        elif self._denominator_equals_ip(den_pop):
            den = PopulationResult(population_type=PopulationType.DENOMINATOR.value, met=True, evaluated=True)
        else:
            den = self._evaluate_population(den_pop, builder)

        # Exclusions
        if den.met and excl_pop is not None:
            excl = self._evaluate_population(excl_pop, builder)
        else:
            excl = self._not_reached(PopulationType.DENOMINATOR_EXCLUSION)

        # Numerator is never evaluated for an excluded patient
        if den.met and not excl.met and num_pop is not None:
            num = self._evaluate_population(num_pop, builder)
        else:
            num = self._not_reached(PopulationType.NUMERATOR)

        results = [ip, den, excl, num]
        exc = None
        if exc_pop is not None:
            if den.met and not excl.met and not num.met:
                exc = self._evaluate_population(exc_pop, builder)
            else:
                exc = self._not_reached(PopulationType.DENOMINATOR_EXCEPTION)
            results.append(exc)

        if not ip.met or not den.met:
            outcome = FinalOutcome.NOT_IN_POPULATION
        elif excl.met:
            outcome = FinalOutcome.EXCLUDED
        elif num.met:
            outcome = FinalOutcome.IN_NUMERATOR
        elif exc is not None and exc.met:
            outcome = FinalOutcome.EXCLUDED
        else:
            outcome = FinalOutcome.NOT_IN_NUMERATOR

        logger.debug("Patient %s evaluated against %s: %s", patient.id, measure.key_id, outcome.value)
        return ValidationTrace(
            patient_id=patient.id,
            patient_name=patient.name,
            final_outcome=outcome,
            pre_check_results=pre_checks,
            population_results=results,
            narrative=self.narrative(patient, outcome, measure),
        )

    # -------------------------------------------------------------------------
    # POPULATIONS
    # -------------------------------------------------------------------------

    @staticmethod
    def _not_reached(population_type: PopulationType) -> PopulationResult:
        return PopulationResult(population_type=population_type.value, met=False, evaluated=False)

    @staticmethod
    def _denominator_equals_ip(population: Optional[Population]) -> bool:
        if population is None or population.criteria is None:
            return True
        if population.description and "equals initial population" in population.description.lower():
            return True
        return not population.criteria.children

    @staticmethod
    def _evaluate_population(population: Population, builder: _TraceBuilder) -> PopulationResult:
        if population.criteria is None:
            return PopulationResult(population_type=population.type.value, met=False, evaluated=True)
        met, node = fold_clause(population.criteria, builder)
        return PopulationResult(
            population_type=population.type.value,
            met=met,
            evaluated=True,
            nodes=[node],
        )

    # -------------------------------------------------------------------------
    # PRE-CHECKS
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_gender(patient: PatientRecord, measure: Measure) -> PreCheckResult:
        required = measure.global_constraints.gender if measure.global_constraints else None
        if required is None:
            return PreCheckResult(check_type="gender", met=True, description="No gender requirement")
        met = matches_gender(patient.gender, required)
        if met:
            description = f"Patient gender ({patient.gender}) meets requirement ({required.value})"
        else:
            description = f"Patient gender ({patient.gender or 'unknown'}) does not match required gender ({required.value})"
        return PreCheckResult(check_type="gender", met=met, description=description)

    @staticmethod
    def _check_age(patient: PatientRecord, measure: Measure, period: MeasurementPeriod) -> PreCheckResult:
        gc = measure.global_constraints
        has_requirement = gc is not None and (gc.age_min is not None or gc.age_max is not None)
        if patient.birth_date is None:
            if has_requirement:
                return PreCheckResult(check_type="age", met=False, description="Patient birth date is unknown")
            return PreCheckResult(check_type="age", met=True, description="No age requirement")

        age_start = age_on(patient.birth_date, period.start)
        age_end = age_on(patient.birth_date, period.end)
        if not has_requirement:
            return PreCheckResult(
                check_type="age",
                met=True,
                description=f"Age {age_start}-{age_end} at measurement period (no age requirement)",
            )

        met = True
        if gc.age_min is not None and age_end < gc.age_min:
            met = False
        if gc.age_max is not None and age_start > gc.age_max:
            met = False
        low = gc.age_min if gc.age_min is not None else 0
        high = gc.age_max if gc.age_max is not None else 120
        relation = "meets requirement" if met else "outside required range"
        return PreCheckResult(
            check_type="age",
            met=met,
            description=f"Age {age_start}-{age_end} {relation} ({low}-{high})",
        )

    # -------------------------------------------------------------------------
    # NARRATIVE
    # -------------------------------------------------------------------------

    @staticmethod
    def narrative(patient: PatientRecord, outcome: FinalOutcome, measure: Measure) -> str:
        name = patient.name or patient.id
        title = measure.metadata.title or "the measure"
        if outcome == FinalOutcome.IN_NUMERATOR:
            return f"{name} meets all criteria for {title} and is included in the performance numerator."
        if outcome == FinalOutcome.NOT_IN_NUMERATOR:
            return f"{name} is in the denominator for {title} but does not meet numerator criteria."
        if outcome == FinalOutcome.EXCLUDED:
            return f"{name} meets exclusion criteria and is excluded from {title} performance calculation."
        return f"{name} does not meet the initial population criteria for {title}."


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def evaluate_patient(patient: PatientRecord, measure: Measure) -> ValidationTrace:
    """Evaluate a single patient against a measure."""
    return MeasureEvaluator().evaluate(patient, measure)
