"""
Factories for measures and patients used across the test modules.

The default measure is a small diabetes control measure:

    Initial Population    age 18-75 AND diabetes diagnosis AND qualifying visit
    Denominator           equals the initial population
    Denominator Exclusion hospice encounter OR palliative care procedure
    Numerator             most recent HbA1c below 9.0 %
"""

from datetime import date
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from ..schemas.patient import ClinicalEvent, PatientRecord
from ..schemas.ums import (
    Code,
    DataElement,
    ElementKind,
    GlobalConstraints,
    LogicalClause,
    LogicalOperator,
    Measure,
    MeasurementPeriod,
    MeasureMetadata,
    Population,
    PopulationType,
    Thresholds,
    ValueSet,
)

PERIOD = MeasurementPeriod(start=date(2025, 1, 1), end=date(2025, 12, 31))


def value_set(
    vs_id: str,
    name: str,
    codes: Iterable[Tuple[str, str]] = (),
    oid: Optional[str] = None,
) -> ValueSet:
    return ValueSet(
        id=vs_id,
        oid=oid,
        name=name,
        codes=[Code(code=code, system=system) for code, system in codes],
    )


def element(
    element_id: str,
    kind: ElementKind = ElementKind.DIAGNOSIS,
    description: str = "",
    value_sets: Sequence[str] = (),
    **fields: Any,
) -> DataElement:
    return DataElement(
        id=element_id,
        element_kind=kind,
        description=description or element_id,
        value_set_refs=list(value_sets),
        **fields,
    )


def clause(
    clause_id: str,
    operator: LogicalOperator = LogicalOperator.AND,
    children: Sequence[Any] = (),
    **fields: Any,
) -> LogicalClause:
    return LogicalClause(id=clause_id, operator=operator, children=list(children), **fields)


def population(
    population_type: PopulationType,
    criteria: Optional[LogicalClause] = None,
    population_id: Optional[str] = None,
    description: Optional[str] = None,
) -> Population:
    return Population(
        id=population_id or f"pop-{population_type.value}",
        type=population_type,
        criteria=criteria,
        description=description,
    )


def diabetes_value_sets() -> List[ValueSet]:
    return [
        value_set("vs-diabetes", "Diabetes", [("E11.9", "ICD10CM"), ("E10.9", "ICD10CM")],
                  oid="2.16.840.1.113883.3.464.1003.103.12.1001"),
        value_set("vs-visit", "Office Visit", [("99213", "CPT"), ("99214", "CPT")]),
        value_set("vs-hospice", "Hospice Encounter", [("Z51.5", "ICD10CM")]),
        value_set("vs-palliative", "Palliative Care Procedure", [("G9054", "HCPCS")]),
        value_set("vs-hba1c", "HbA1c Laboratory Test", [("4548-4", "LOINC")]),
    ]


def diabetes_measure(
    measure_id: str = "CMS122",
    populations: Optional[List[Population]] = None,
    value_sets: Optional[List[ValueSet]] = None,
    global_constraints: Optional[GlobalConstraints] = None,
) -> Measure:
    if populations is None:
        populations = [
            population(PopulationType.INITIAL_POPULATION, clause("ip-root", LogicalOperator.AND, [
                element("age", ElementKind.DEMOGRAPHIC, "Age 18 to 75",
                        thresholds=Thresholds(age_min=18, age_max=75)),
                element("dx-diabetes", ElementKind.DIAGNOSIS, "Diabetes", ["vs-diabetes"]),
                element("enc-visit", ElementKind.ENCOUNTER, "Office Visit", ["vs-visit"]),
            ])),
            population(PopulationType.DENOMINATOR, clause("den-root", LogicalOperator.AND, []),
                       description="Equals Initial Population"),
            population(PopulationType.DENOMINATOR_EXCLUSION, clause("excl-root", LogicalOperator.OR, [
                element("enc-hospice", ElementKind.ENCOUNTER, "Hospice care", ["vs-hospice"]),
                element("proc-palliative", ElementKind.PROCEDURE, "Palliative care", ["vs-palliative"]),
            ])),
            population(PopulationType.NUMERATOR, clause("num-root", LogicalOperator.AND, [
                element("obs-hba1c", ElementKind.OBSERVATION, "HbA1c below 9", ["vs-hba1c"],
                        thresholds=Thresholds(value_max=8.99, unit="%")),
            ])),
        ]
    return Measure(
        id=measure_id,
        metadata=MeasureMetadata(
            measure_id=measure_id,
            title="Diabetes: Hemoglobin A1c Control",
            version="1.0.0",
            steward="Example Quality Org",
            measurement_period=PERIOD,
        ),
        populations=populations,
        value_sets=diabetes_value_sets() if value_sets is None else value_sets,
        global_constraints=global_constraints,
    )


def event(
    code: Optional[str],
    display: str = "",
    on: Optional[str] = "2025-06-01",
    **fields: Any,
) -> ClinicalEvent:
    return ClinicalEvent(code=code, display=display, date=on, **fields)


def patient(
    patient_id: str = "p1",
    name: str = "Test Patient",
    birth_date: Optional[str] = "1970-03-15",
    gender: Optional[str] = "female",
    **events: List[ClinicalEvent],
) -> PatientRecord:
    return PatientRecord(id=patient_id, name=name, birth_date=birth_date, gender=gender, **events)


def numerator_patient(patient_id: str = "p-num") -> PatientRecord:
    """In the denominator, not excluded, HbA1c controlled."""
    return patient(
        patient_id,
        diagnoses=[event("E11.9", "Type 2 diabetes mellitus", "2025-02-10")],
        encounters=[event("99213", "Office visit", "2025-03-01")],
        observations=[event("4548-4", "Hemoglobin A1c", "2025-09-01", value=7.2, unit="%")],
    )


def uncontrolled_patient(patient_id: str = "p-uncontrolled") -> PatientRecord:
    """In the denominator, not excluded, HbA1c above target."""
    return patient(
        patient_id,
        diagnoses=[event("E11.9", "Type 2 diabetes mellitus", "2025-02-10")],
        encounters=[event("99213", "Office visit", "2025-03-01")],
        observations=[event("4548-4", "Hemoglobin A1c", "2025-09-01", value=10.4, unit="%")],
    )


def hospice_patient(patient_id: str = "p-hospice") -> PatientRecord:
    """Meets the initial population and the hospice exclusion, HbA1c controlled."""
    return patient(
        patient_id,
        diagnoses=[event("E11.9", "Type 2 diabetes mellitus", "2025-02-10")],
        encounters=[
            event("99213", "Office visit", "2025-03-01"),
            event("Z51.5", "Hospice encounter", "2025-10-01"),
        ],
        observations=[event("4548-4", "Hemoglobin A1c", "2025-09-01", value=7.2, unit="%")],
    )
