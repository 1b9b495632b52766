"""
SQL dialect configuration for the CTE generator.

Table names, column names, parameter markers and date functions differ
between warehouses; the generator reads all of them from a DialectConfig
and hard-codes none.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..core.errors import UnknownDialectError


class CategoryTable(BaseModel):
    """Source table for one clinical data category."""
    table: str
    alias: str
    concept_column: str
    date_column: str
    end_date_column: Optional[str] = None
    value_column: Optional[str] = None
    status_filter: Optional[str] = None
    vocabularies: List[str] = Field(default_factory=list)


class DialectConfig(BaseModel):
    name: str
    description: str = ""

    # Patient / demographics
    patient_table: str
    person_id_column: str = "person_id"
    population_id_column: str = "population_id"
    birth_date_column: str = "birth_date"
    sex_column: str = "sex_cd"
    sex_codes: Dict[str, str] = Field(default_factory=lambda: {"M": "male", "F": "female"})
    active_filter: Optional[str] = None

    # Ontology
    ontology_table: str
    ontology_concept_key: str = "concept_cki"
    ontology_code_column: str = "source_concept_identifier"
    ontology_vocabulary_column: str = "source_vocabulary_cd"

    # Clinical categories; categories missing here become placeholder predicates
    categories: Dict[str, CategoryTable] = Field(default_factory=dict)

    # Parameters and functions
    param_prefix: str = ":"
    date_literal: str = "DATE '{value}'"
    date_add: str = "DATEADD({unit}, {amount}, {date})"
    years_between: str = "DATEDIFF(YEAR, {start}, {end})"
    current_date: str = "CURRENT_DATE()"
    uppercase_identifiers: bool = False

    # Output
    reindent: bool = False

    def param(self, name: str) -> str:
        return f"{self.param_prefix}{name}"

    def table(self, name: str) -> str:
        return name.upper() if self.uppercase_identifiers else name


_HDI = DialectConfig(
    name="hdi",
    description="HealtheIntent data warehouse (Snowflake)",
    patient_table="hsp.patient",
    active_filter="p.active_ind = 1",
    ontology_table="ontology.concept",
    uppercase_identifiers=True,
    categories={
        "condition": CategoryTable(
            table="hsp.clinical_diagnosis", alias="cd",
            concept_column="diagnosis_cki", date_column="effective_date",
            vocabularies=["ICD-10-CM", "SNOMED"],
        ),
        "result": CategoryTable(
            table="hsp.clinical_result", alias="cr",
            concept_column="result_cki", date_column="service_date",
            value_column="result_value_num", status_filter="cr.result_status_cd = 'FINAL'",
            vocabularies=["LOINC", "SNOMED"],
        ),
        "procedure": CategoryTable(
            table="hsp.clinical_procedure", alias="cp",
            concept_column="procedure_cki", date_column="service_date",
            vocabularies=["CPT", "HCPCS", "SNOMED", "ICD-10-PCS"],
        ),
        "medication": CategoryTable(
            table="hsp.medication_administration", alias="ma",
            concept_column="medication_cki", date_column="admin_date",
            status_filter="ma.admin_status_cd = 'COMPLETED'",
            vocabularies=["RXNORM", "NDC"],
        ),
        "immunization": CategoryTable(
            table="hsp.immunization", alias="im",
            concept_column="immunization_cki", date_column="admin_date",
            status_filter="im.immunization_status_cd = 'COMPLETED'",
            vocabularies=["CVX"],
        ),
        "encounter": CategoryTable(
            table="hsp.encounter", alias="en",
            concept_column="encounter_type_cki", date_column="service_date",
            end_date_column="discharge_date",
            status_filter="en.encounter_status_cd = 'COMPLETED'",
            vocabularies=["CPT", "SNOMED", "HCPCS"],
        ),
    },
)

_SYNAPSE = DialectConfig(
    name="synapse",
    description="Azure Synapse dedicated SQL pool (T-SQL)",
    patient_table="dbo.patient",
    population_id_column="tenant_id",
    sex_column="gender_code",
    active_filter="p.is_active = 1",
    ontology_table="dbo.concept",
    ontology_concept_key="concept_id",
    ontology_code_column="concept_code",
    ontology_vocabulary_column="vocabulary_id",
    categories={
        "condition": CategoryTable(
            table="dbo.condition", alias="cd",
            concept_column="condition_concept_id", date_column="onset_date",
            vocabularies=["ICD10CM", "SNOMED"],
        ),
        "result": CategoryTable(
            table="dbo.observation", alias="cr",
            concept_column="observation_concept_id", date_column="effective_date",
            value_column="value_numeric", status_filter="cr.status IN ('final', 'amended', 'corrected')",
            vocabularies=["LOINC"],
        ),
        "procedure": CategoryTable(
            table="dbo.procedure_event", alias="cp",
            concept_column="procedure_concept_id", date_column="performed_date",
            vocabularies=["CPT4", "HCPCS", "SNOMED"],
        ),
        "medication": CategoryTable(
            table="dbo.medication_request", alias="ma",
            concept_column="medication_concept_id", date_column="authored_date",
            status_filter="ma.status IN ('active', 'completed')",
            vocabularies=["RxNorm"],
        ),
        "immunization": CategoryTable(
            table="dbo.immunization", alias="im",
            concept_column="vaccine_concept_id", date_column="occurrence_date",
            status_filter="im.status = 'completed'",
            vocabularies=["CVX"],
        ),
        "encounter": CategoryTable(
            table="dbo.encounter", alias="en",
            concept_column="encounter_type_concept_id", date_column="start_date",
            end_date_column="end_date",
            status_filter="en.status = 'finished'",
            vocabularies=["CPT4", "SNOMED"],
        ),
    },
    param_prefix="@",
    date_literal="CAST('{value}' AS DATE)",
    current_date="CAST(GETDATE() AS DATE)",
)

DIALECTS: Dict[str, DialectConfig] = {
    _HDI.name: _HDI,
    _SYNAPSE.name: _SYNAPSE,
}


def get_dialect(name: str) -> DialectConfig:
    """Look up a registered dialect by name (case-insensitive)."""
    key = (name or "").strip().lower()
    if key not in DIALECTS:
        raise UnknownDialectError(name, sorted(DIALECTS))
    return DIALECTS[key]
