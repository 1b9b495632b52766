"""
Tests for the SQL generator and its dialects.

Run with: python -m pytest backend/measure_engine/codegen -v
"""

import pytest
import sqlparse

from measure_engine.codegen.sql_dialects import DIALECTS, get_dialect
from measure_engine.codegen.sql_generator import (
    SqlGenerator,
    estimate_complexity,
    generate_sql,
    sql_literal,
)
from measure_engine.core.errors import UnknownDialectError
from measure_engine.schemas.results import Complexity
from measure_engine.schemas.ums import (
    ElementKind,
    Gender,
    GlobalConstraints,
    LogicalOperator,
    Measure,
    MeasureMetadata,
    PopulationType,
    Thresholds,
)
from measure_engine.testing.fixtures import (
    clause,
    diabetes_measure,
    diabetes_value_sets,
    element,
    population,
    value_set,
)

AND, OR, NOT = LogicalOperator.AND, LogicalOperator.OR, LogicalOperator.NOT


def _measure_with_ip(criteria, value_sets=None) -> Measure:
    return diabetes_measure(
        populations=[population(PopulationType.INITIAL_POPULATION, criteria)],
        value_sets=value_sets,
    )


def _cte(sql: str, name: str) -> str:
    """Body of one CTE: from its header to the next top-level CTE."""
    start = sql.index(f"{name} AS (")
    end = sql.find("\n),", start)
    return sql[start:end if end != -1 else len(sql)]


# =============================================================================
# DIALECTS
# =============================================================================

def test_builtin_dialects_registered():
    assert set(DIALECTS) == {"hdi", "synapse"}
    assert get_dialect("HDI").name == "hdi"


def test_unknown_dialect_raises():
    with pytest.raises(UnknownDialectError) as exc:
        get_dialect("oracle")
    assert "hdi" in str(exc.value)


# =============================================================================
# QUERY STRUCTURE
# =============================================================================

def test_generates_single_cte_statement():
    result = generate_sql(diabetes_measure())
    assert result.success, result.errors
    statements = [s for s in sqlparse.split(result.sql) if s.strip()]
    assert len(statements) == 1
    assert statements[0].rstrip().endswith("ORDER BY person_id;")


def test_cte_order():
    sql = generate_sql(diabetes_measure()).sql
    names = [
        "ONT AS (",
        "DEMOG AS (",
        "PRED_DEMOGRAPHICS AS (",
        "PRED_CONDITION AS (",
        "PRED_ENCOUNTER AS (",
        "PRED_PROCEDURE AS (",
        "PRED_RESULT AS (",
        "INITIAL_POPULATION AS (",
        "DENOMINATOR AS (",
        "DENOMINATOR_EXCLUSION AS (",
        "NUMERATOR AS (",
        "MEASURE_RESULT AS (",
    ]
    positions = [sql.index(n) for n in names]
    assert positions == sorted(positions)
    assert sql.rstrip().endswith("ORDER BY person_id;")


def test_predicates_tagged_and_parameterised():
    sql = generate_sql(diabetes_measure(), "hdi").sql
    condition = _cte(sql, "PRED_CONDITION")
    assert "SELECT 'dx-diabetes' AS predicate_id" in condition
    assert "o.code IN ('E11.9', 'E10.9')" in condition
    assert ":population_id" in condition
    assert "(:patient_id IS NULL OR cd.person_id = :patient_id)" in condition
    assert "BETWEEN DATE '2025-01-01' AND DATE '2025-12-31'" in condition
    assert "FROM HSP.CLINICAL_DIAGNOSIS cd" in condition


def test_category_cte_unions_its_predicates():
    sql = generate_sql(diabetes_measure()).sql
    encounters = _cte(sql, "PRED_ENCOUNTER")
    assert "'enc-visit'" in encounters
    assert "'enc-hospice'" in encounters
    assert "UNION ALL" in encounters


def test_population_set_algebra():
    sql = generate_sql(diabetes_measure()).sql
    ip = _cte(sql, "INITIAL_POPULATION")
    assert "SELECT person_id FROM PRED_CONDITION WHERE predicate_id = 'dx-diabetes'" in ip
    assert "INTERSECT" in ip
    excl = _cte(sql, "DENOMINATOR_EXCLUSION")
    assert "UNION" in excl
    assert "INTERSECT" not in excl


def test_not_clause_uses_except():
    criteria = clause("root", AND, [
        element("a", ElementKind.DIAGNOSIS, "Alpha", ["vs-diabetes"]),
        clause("no-hospice", NOT, [element("h", ElementKind.ENCOUNTER, "Hospice", ["vs-hospice"])]),
    ])
    sql = generate_sql(_measure_with_ip(criteria)).sql
    ip = _cte(sql, "INITIAL_POPULATION")
    assert "SELECT person_id FROM DEMOG\n" in ip
    assert "EXCEPT" in ip


def test_negated_leaf_subtracts_from_demog():
    criteria = clause("root", AND, [
        element("a", ElementKind.DIAGNOSIS, "Alpha", ["vs-diabetes"], negation=True),
    ])
    ip = _cte(generate_sql(_measure_with_ip(criteria)).sql, "INITIAL_POPULATION")
    assert "EXCEPT" in ip
    assert "predicate_id = 'a'" in ip


def test_duplicate_element_ids_extracted_once():
    shared = element("dx", ElementKind.DIAGNOSIS, "Diabetes", ["vs-diabetes"])
    measure = diabetes_measure(populations=[
        population(PopulationType.INITIAL_POPULATION, clause("ip", AND, [shared])),
        population(PopulationType.NUMERATOR, clause("num", AND, [shared])),
    ])
    result = generate_sql(measure)
    assert result.metadata.predicate_count == 1
    assert _cte(result.sql, "PRED_CONDITION").count("AS predicate_id") == 1


def test_measure_result_funnel_flags():
    sql = generate_sql(diabetes_measure()).sql
    funnel = sql[sql.index("MEASURE_RESULT AS ("):]
    assert "AS initial_population" in funnel
    assert "AS numerator" in funnel
    assert "LEFT JOIN INITIAL_POPULATION ip ON ip.person_id = d.person_id" in funnel
    # numerator membership requires not being excluded
    assert "dex.person_id IS NULL AND num.person_id IS NOT NULL" in funnel


def test_global_constraints_filter_measure_result():
    measure = diabetes_measure(global_constraints=GlobalConstraints(age_min=18, gender=Gender.FEMALE))
    funnel = generate_sql(measure).sql.split("MEASURE_RESULT AS (")[1]
    assert "d.gender = 'female'" in funnel
    assert "DATEDIFF(YEAR, d.birth_date, DATE '2025-12-31') >= 18" in funnel


def test_synapse_dialect_shape():
    sql = generate_sql(diabetes_measure(), "synapse").sql
    assert "@population_id" in sql
    assert ":population_id" not in sql
    assert "CAST('2025-01-01' AS DATE)" in sql
    assert "FROM dbo.condition cd" in sql


def test_generation_is_deterministic():
    measure = diabetes_measure()
    assert generate_sql(measure).sql == generate_sql(measure).sql


def test_reindent_dialect_passes_through_sqlparse():
    dialect = get_dialect("hdi").model_copy(update={"reindent": True})
    result = SqlGenerator().generate(diabetes_measure(), dialect)
    assert result.success
    assert "MEASURE_RESULT" in result.sql


# =============================================================================
# WARNINGS AND ERRORS
# =============================================================================

def test_empty_value_set_becomes_placeholder_predicate():
    value_sets = diabetes_value_sets()
    value_sets[0] = value_set("vs-diabetes", "Diabetes")
    result = generate_sql(diabetes_measure(value_sets=value_sets))
    assert result.success
    condition = _cte(result.sql, "PRED_CONDITION")
    assert "WHERE 1 = 0" in condition
    assert "-- WARNING: value set 'Diabetes' has no codes" in condition
    assert any("'Diabetes' has no codes" in w for w in result.warnings)


def test_missing_value_set_and_unmapped_kind_warn():
    criteria = clause("root", OR, [
        element("p", ElementKind.PROCEDURE, "Unlinked procedure"),
        element("dev", ElementKind.DEVICE, "Insulin pump", ["vs-diabetes"]),
    ])
    result = generate_sql(_measure_with_ip(criteria))
    assert result.success
    assert any("no value set attached to 'Unlinked procedure'" in w for w in result.warnings)
    assert any("Insulin pump" in w for w in result.warnings)
    assert "PRED_OTHER AS (" in result.sql


def test_multiline_description_stays_in_comments():
    criteria = clause("root", AND, [element("a", ElementKind.DIAGNOSIS, "Diabetes\nwith complications")])
    result = generate_sql(_measure_with_ip(criteria))
    assert result.success
    assert "\nwith complications" not in result.sql
    assert "-- WARNING: no value set attached to 'Diabetes with complications'" in result.sql
    assert all("\n" not in w for w in result.warnings)


def test_demographic_sex_from_description_with_age():
    criteria = clause("root", AND, [
        element("women", ElementKind.DEMOGRAPHIC, "Female patients", thresholds=Thresholds(age_min=50)),
    ])
    demographics = _cte(generate_sql(_measure_with_ip(criteria)).sql, "PRED_DEMOGRAPHICS")
    assert "d.gender = 'female'" in demographics
    assert "DATEDIFF(YEAR, d.birth_date, DATE '2025-12-31') >= 50" in demographics


def test_every_warning_is_commented_in_sql():
    criteria = clause("root", AND, [
        element("p", ElementKind.PROCEDURE, "Unlinked procedure"),
        clause("empty", OR, []),
        clause("bad-not", NOT, [element("b", ElementKind.DIAGNOSIS, "Beta", ["vs-diabetes"]),
                                element("c", ElementKind.DIAGNOSIS, "Gamma", ["vs-diabetes"])]),
    ])
    result = generate_sql(_measure_with_ip(criteria))
    assert len(result.warnings) == 3
    assert result.sql.count("-- WARNING") >= 3


def test_empty_populations_is_an_error():
    result = generate_sql(Measure(id="m1", metadata=MeasureMetadata(measure_id="m1")))
    assert not result.success
    assert result.sql == ""
    assert any("population" in e for e in result.errors)


def test_blank_measure_id_is_an_error():
    result = generate_sql(diabetes_measure(measure_id=""))
    assert not result.success
    assert "Measure ID is required" in result.errors


def test_complexity_thresholds():
    assert estimate_complexity(1, 2) == Complexity.LOW
    assert estimate_complexity(5, 2) == Complexity.MEDIUM
    assert estimate_complexity(9, 2) == Complexity.HIGH


def test_sql_literal_escapes_quotes():
    assert sql_literal("O'Brien") == "'O''Brien'"
