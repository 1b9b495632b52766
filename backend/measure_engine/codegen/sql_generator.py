"""
SQL Generator

Compiles a UMS measure into a single CTE-based query:

    ONT / DEMOG                 ontology codes and the patient base
    PRED_<CATEGORY>             one UNION ALL of predicates per data category
    <POPULATION>                set algebra over predicate ids, per population
    MEASURE_RESULT              funnel flags per patient

The query is parameterised by population id and (optionally) patient id.
Like the CQL generator it only refuses a measure without populations or
without an id; every other defect becomes a placeholder plus a warning.
"""

import logging
import textwrap
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import sqlparse

from ..core.config import settings
from ..logic.tree import required_gender, tree_depth, walk_data_elements
from ..logic.walker import ClauseShape, ClauseVisitor, fold_clause
from ..schemas.results import Complexity, SqlGenerationResult, SqlMetadata
from ..schemas.ums import (
    DataElement,
    ElementKind,
    LogicalClause,
    LogicalOperator,
    Measure,
    Population,
    PopulationType,
    TimingConstraint,
)
from .sql_dialects import CategoryTable, DialectConfig, get_dialect
from .text import single_line

logger = logging.getLogger(__name__)

INDENT = "    "

CATEGORY_ORDER = [
    "demographics",
    "condition",
    "encounter",
    "procedure",
    "result",
    "medication",
    "immunization",
    "other",
]

_KIND_CATEGORIES: Dict[ElementKind, str] = {
    ElementKind.DEMOGRAPHIC: "demographics",
    ElementKind.DIAGNOSIS: "condition",
    ElementKind.ENCOUNTER: "encounter",
    ElementKind.PROCEDURE: "procedure",
    ElementKind.OBSERVATION: "result",
    ElementKind.ASSESSMENT: "result",
    ElementKind.MEDICATION: "medication",
    ElementKind.IMMUNIZATION: "immunization",
    ElementKind.DEVICE: "other",
    ElementKind.ALLERGY: "other",
}

_DATE_UNITS: Dict[str, str] = {
    "day": "DAY", "days": "DAY", "day(s)": "DAY",
    "week": "WEEK", "weeks": "WEEK", "week(s)": "WEEK",
    "month": "MONTH", "months": "MONTH", "month(s)": "MONTH",
    "year": "YEAR", "years": "YEAR", "year(s)": "YEAR",
}

_MEASUREMENT_PERIOD_ANCHORS = {
    "Measurement Period",
    "Measurement Period Start",
    "Measurement Period End",
}

# population type -> alias in MEASURE_RESULT
_FUNNEL_ALIASES: Dict[PopulationType, str] = {
    PopulationType.INITIAL_POPULATION: "ip",
    PopulationType.DENOMINATOR: "den",
    PopulationType.DENOMINATOR_EXCLUSION: "dex",
    PopulationType.DENOMINATOR_EXCEPTION: "dexc",
    PopulationType.NUMERATOR: "num",
    PopulationType.NUMERATOR_EXCLUSION: "numex",
    PopulationType.MEASURE_POPULATION: "mpop",
    PopulationType.MEASURE_OBSERVATION: "mobs",
}


def category_for(element: DataElement) -> str:
    return _KIND_CATEGORIES.get(element.element_kind, "other")


def cte_for_category(category: str) -> str:
    return f"PRED_{category.upper()}"


def sql_literal(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def _indent(text: str, levels: int = 1) -> str:
    return textwrap.indent(text, INDENT * levels)


def estimate_complexity(predicate_count: int, max_depth: int) -> Complexity:
    score = predicate_count + 2 * max_depth
    if score <= 5:
        return Complexity.LOW
    if score <= 12:
        return Complexity.MEDIUM
    return Complexity.HIGH


@dataclass
class _Predicate:
    element: DataElement
    category: str


@dataclass
class _Period:
    """SQL expressions for the measurement period bounds."""
    start: str
    end: str
    description: str


# =============================================================================
# POPULATION SET ALGEBRA (shared tree walk)
# =============================================================================

class _SetExpressionBuilder(ClauseVisitor[Tuple[str, bool]]):
    """Builds a person_id set expression; results are (text, is_compound)."""

    def __init__(self, categories: Dict[str, str], warnings: List[str]):
        self.categories = categories
        self.warnings = warnings

    def visit_element(self, element: DataElement, depth: int) -> Tuple[str, bool]:
        leaf = (
            f"SELECT person_id FROM {cte_for_category(self.categories[element.id])} "
            f"WHERE predicate_id = {sql_literal(element.id)}"
        )
        if element.negation:
            return f"SELECT person_id FROM DEMOG\nEXCEPT\n{leaf}", True
        return leaf, False

    def combine_clause(
        self,
        clause: LogicalClause,
        shape: ClauseShape,
        child_results: List[Tuple[str, bool]],
        depth: int,
    ) -> Tuple[str, bool]:
        if shape.is_empty:
            message = f"{shape.operator.value} clause '{single_line(clause.id)}' has no children"
            if shape.operator == LogicalOperator.AND:
                self.warnings.append(f"{message}; matching every patient")
                body = "SELECT person_id FROM DEMOG"
            else:
                self.warnings.append(f"{message}; matching no patients")
                body = "SELECT person_id FROM DEMOG WHERE 1 = 0"
            return f"-- WARNING: {message}\n{body}", False

        parts = [
            f"(\n{_indent(text)}\n)" if compound else text
            for text, compound in child_results
        ]

        if shape.operator == LogicalOperator.NOT:
            header = ""
            if shape.is_malformed_not:
                message = (
                    f"NOT clause '{single_line(clause.id)}' has {shape.child_count} children; "
                    "negating their conjunction"
                )
                self.warnings.append(message)
                header = f"-- WARNING: {message}\n"
            inner = "\nINTERSECT\n".join(parts)
            return f"{header}SELECT person_id FROM DEMOG\nEXCEPT\n(\n{_indent(inner)}\n)", True

        if len(parts) == 1:
            return child_results[0]

        joiner = "\nINTERSECT\n" if shape.operator == LogicalOperator.AND else "\nUNION\n"
        return joiner.join(parts), True


# =============================================================================
# GENERATOR
# =============================================================================

class SqlGenerator:
    """Compiles a Measure into dialect-specific SQL."""

    def generate(
        self,
        measure: Measure,
        dialect_config: Optional[DialectConfig] = None,
    ) -> SqlGenerationResult:
        dialect = dialect_config or get_dialect(settings.DEFAULT_SQL_DIALECT)
        errors = self._validate(measure)
        if errors:
            for error in errors:
                logger.warning("SQL generation aborted for %r: %s", measure.key_id, error)
            return SqlGenerationResult(
                success=False,
                errors=errors,
                metadata=SqlMetadata(dialect=dialect.name, generated_at=datetime.now(timezone.utc)),
            )

        warnings: List[str] = []
        period = self._measurement_period(measure, dialect)
        predicates = self.extract_predicates(measure)
        categories = {p.element.id: p.category for p in predicates}

        ctes: List[Tuple[str, str]] = [
            ("ONT", self._ontology_cte(predicates, dialect)),
            ("DEMOG", self._demographics_cte(dialect)),
        ]
        used_categories = [c for c in CATEGORY_ORDER if any(p.category == c for p in predicates)]
        for category in used_categories:
            members = [p for p in predicates if p.category == category]
            ctes.append((
                cte_for_category(category),
                self._category_cte(measure, members, dialect, period, warnings),
            ))

        population_ctes = self._population_cte_names(measure)
        builder = _SetExpressionBuilder(categories, warnings)
        for population in measure.populations:
            ctes.append((
                population_ctes[population.id],
                self._population_cte(population, builder, warnings),
            ))

        ctes.append(("MEASURE_RESULT", self._measure_result_cte(measure, population_ctes, dialect, period, warnings)))

        parts = [self._header(measure, dialect, period)]
        parts.append("WITH")
        parts.append(",\n".join(f"{name} AS (\n{_indent(body)}\n)" for name, body in ctes))
        parts.append("SELECT *\nFROM MEASURE_RESULT\nORDER BY person_id;")
        sql = "\n".join(parts) + "\n"
        if dialect.reindent:
            sql = sqlparse.format(sql, reindent=True, keyword_case="upper")

        warnings = list(dict.fromkeys(warnings))
        max_depth = max(
            (tree_depth(p.criteria) for p in measure.populations if p.criteria is not None),
            default=0,
        )
        metadata = SqlMetadata(
            predicate_count=len(predicates),
            data_models_used=used_categories,
            estimated_complexity=estimate_complexity(len(predicates), max_depth),
            dialect=dialect.name,
            generated_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Generated %s SQL for %s: %d predicates, %d populations, %d warnings",
            dialect.name, measure.metadata.measure_id, len(predicates), len(measure.populations), len(warnings),
        )
        return SqlGenerationResult(success=True, sql=sql, warnings=warnings, metadata=metadata)

    # -------------------------------------------------------------------------
    # VALIDATION / EXTRACTION
    # -------------------------------------------------------------------------

    def _validate(self, measure: Measure) -> List[str]:
        errors = []
        if not measure.metadata.measure_id or not measure.metadata.measure_id.strip():
            errors.append("Measure ID is required")
        if not measure.populations:
            errors.append("Measure must have at least one population")
        return errors

    @staticmethod
    def extract_predicates(measure: Measure) -> List[_Predicate]:
        """Every leaf across populations, in population order, first occurrence per id."""
        seen = set()
        predicates = []
        for population in measure.populations:
            if population.criteria is None:
                continue
            for element in walk_data_elements(population.criteria):
                if element.id in seen:
                    continue
                seen.add(element.id)
                predicates.append(_Predicate(element=element, category=category_for(element)))
        return predicates

    def _measurement_period(self, measure: Measure, dialect: DialectConfig) -> _Period:
        period = measure.metadata.measurement_period
        if period is not None:
            return _Period(
                start=dialect.date_literal.format(value=period.start.isoformat()),
                end=dialect.date_literal.format(value=period.end.isoformat()),
                description=f"{period.start.isoformat()} to {period.end.isoformat()}",
            )
        if settings.DEFAULT_MEASUREMENT_YEAR:
            year = settings.DEFAULT_MEASUREMENT_YEAR
            return _Period(
                start=dialect.date_literal.format(value=f"{year}-01-01"),
                end=dialect.date_literal.format(value=f"{year}-12-31"),
                description=f"{year}-01-01 to {year}-12-31",
            )
        return _Period(
            start=dialect.date_add.format(unit="YEAR", amount=-1, date=dialect.current_date),
            end=dialect.current_date,
            description="the year ending on the run date",
        )

    # -------------------------------------------------------------------------
    # SECTIONS
    # -------------------------------------------------------------------------

    def _header(self, measure: Measure, dialect: DialectConfig, period: _Period) -> str:
        meta = measure.metadata
        rule = "-- " + "=" * 77
        lines = [
            rule,
            f"-- Measure: {single_line(meta.title or meta.measure_id)}",
            f"-- Measure ID: {single_line(meta.measure_id)}",
            f"-- Version: {meta.version}",
            f"-- Dialect: {dialect.name} ({dialect.description})",
            f"-- Parameters: {dialect.param('population_id')}, "
            f"{dialect.param('patient_id')} (NULL for every patient)",
            f"-- Measurement period: {period.description}",
            "-- Generated from the UMS logic tree. Record manual edits as overrides.",
            rule,
        ]
        return "\n".join(lines)

    def _ontology_cte(self, predicates: List[_Predicate], dialect: DialectConfig) -> str:
        vocabularies: List[str] = []
        for category in CATEGORY_ORDER:
            table = dialect.categories.get(category)
            if table is None:
                continue
            if predicates and not any(p.category == category for p in predicates):
                continue
            for vocabulary in table.vocabularies:
                if vocabulary not in vocabularies:
                    vocabularies.append(vocabulary)
        lines = [
            "SELECT",
            f"{INDENT}o.{dialect.ontology_concept_key} AS concept_key,",
            f"{INDENT}o.{dialect.ontology_vocabulary_column} AS vocabulary,",
            f"{INDENT}o.{dialect.ontology_code_column} AS code",
            f"FROM {dialect.table(dialect.ontology_table)} o",
        ]
        if vocabularies:
            listed = ", ".join(sql_literal(v) for v in vocabularies)
            lines.append(f"WHERE o.{dialect.ontology_vocabulary_column} IN ({listed})")
        return "\n".join(lines)

    def _demographics_cte(self, dialect: DialectConfig) -> str:
        sex = " ".join(
            f"WHEN {sql_literal(code)} THEN {sql_literal(value)}"
            for code, value in dialect.sex_codes.items()
        )
        lines = [
            "SELECT",
            f"{INDENT}p.{dialect.person_id_column} AS person_id,",
            f"{INDENT}p.{dialect.birth_date_column} AS birth_date,",
            f"{INDENT}CASE p.{dialect.sex_column} {sex} ELSE 'unknown' END AS gender",
            f"FROM {dialect.table(dialect.patient_table)} p",
            f"WHERE p.{dialect.population_id_column} = {dialect.param('population_id')}",
            f"  AND ({dialect.param('patient_id')} IS NULL "
            f"OR p.{dialect.person_id_column} = {dialect.param('patient_id')})",
        ]
        if dialect.active_filter:
            lines.append(f"  AND {dialect.active_filter}")
        return "\n".join(lines)

    def _category_cte(
        self,
        measure: Measure,
        predicates: List[_Predicate],
        dialect: DialectConfig,
        period: _Period,
        warnings: List[str],
    ) -> str:
        blocks = []
        for predicate in predicates:
            element = predicate.element
            label = single_line(element.description or element.id)
            comment = f"-- [{element.id}] {element.element_kind.value}: {label}"
            if predicate.category == "demographics":
                body = self._demographic_predicate(element, dialect, period, warnings)
            else:
                body = self._clinical_predicate(measure, predicate, dialect, period, warnings)
            blocks.append(f"{comment}\n{body}")
        return "\nUNION ALL\n".join(blocks)

    def _placeholder(self, element: DataElement, message: str, warnings: List[str]) -> str:
        warnings.append(message)
        return "\n".join([
            f"-- WARNING: {message}",
            f"SELECT {sql_literal(element.id)} AS predicate_id, d.person_id",
            "FROM DEMOG d",
            "WHERE 1 = 0",
        ])

    def _demographic_predicate(
        self,
        element: DataElement,
        dialect: DialectConfig,
        period: _Period,
        warnings: List[str],
    ) -> str:
        conditions = []
        gender = required_gender(element)
        if gender is not None:
            conditions.append(f"d.gender = {sql_literal(gender.value)}")
        thresholds = element.thresholds
        if thresholds is not None:
            age = dialect.years_between.format(start="d.birth_date", end=period.end)
            if thresholds.age_min is not None:
                conditions.append(f"{age} >= {thresholds.age_min}")
            if thresholds.age_max is not None:
                conditions.append(f"{age} <= {thresholds.age_max}")
        if not conditions:
            return self._placeholder(
                element,
                f"demographic element '{single_line(element.description or element.id)}' has no constraint; "
                "predicate selects no rows",
                warnings,
            )
        return "\n".join([
            f"SELECT {sql_literal(element.id)} AS predicate_id, d.person_id",
            "FROM DEMOG d",
            "WHERE " + "\n  AND ".join(conditions),
        ])

    def _clinical_predicate(
        self,
        measure: Measure,
        predicate: _Predicate,
        dialect: DialectConfig,
        period: _Period,
        warnings: List[str],
    ) -> str:
        element = predicate.element
        label = single_line(element.description or element.id)
        table: Optional[CategoryTable] = dialect.categories.get(predicate.category)
        if table is None:
            return self._placeholder(
                element,
                f"no {dialect.name} source table for {element.element_kind.value} element "
                f"'{label}'; predicate selects no rows",
                warnings,
            )

        value_sets = measure.resolve_value_sets(element)
        if not value_sets:
            return self._placeholder(
                element,
                f"no value set attached to '{label}'; predicate selects no rows",
                warnings,
            )

        codes: List[str] = []
        for vs in value_sets:
            for code in vs.codes:
                if code.code not in codes:
                    codes.append(code.code)
        if not codes:
            names = ", ".join(single_line(vs.name) for vs in value_sets)
            return self._placeholder(
                element,
                f"value set '{names}' has no codes; predicate for '{label}' selects no rows",
                warnings,
            )

        a = table.alias
        conditions = [
            f"{a}.{dialect.population_id_column} = {dialect.param('population_id')}",
            f"({dialect.param('patient_id')} IS NULL OR {a}.{dialect.person_id_column} = {dialect.param('patient_id')})",
            f"o.code IN ({', '.join(sql_literal(c) for c in codes)})",
        ]
        timing, timing_warning = timing_condition(table, element.timing, period, dialect)
        conditions.append(timing)
        if timing_warning:
            warnings.append(timing_warning)
        if table.status_filter:
            conditions.append(table.status_filter)
        thresholds = element.thresholds
        if thresholds is not None and (thresholds.value_min is not None or thresholds.value_max is not None):
            if table.value_column is None:
                warnings.append(
                    f"value thresholds on '{label}' ignored; {predicate.category} has no value column"
                )
            else:
                if thresholds.value_min is not None:
                    conditions.append(f"{a}.{table.value_column} >= {thresholds.value_min:g}")
                if thresholds.value_max is not None:
                    conditions.append(f"{a}.{table.value_column} <= {thresholds.value_max:g}")

        return "\n".join([
            f"SELECT {sql_literal(element.id)} AS predicate_id, {a}.{dialect.person_id_column} AS person_id",
            f"FROM {dialect.table(table.table)} {a}",
            f"INNER JOIN ONT o ON o.concept_key = {a}.{table.concept_column}",
            "WHERE " + "\n  AND ".join(conditions),
        ])

    def _population_cte_names(self, measure: Measure) -> Dict[str, str]:
        names: Dict[str, str] = {}
        used: Dict[str, int] = {}
        for population in measure.populations:
            base = population.type.cte_name
            used[base] = used.get(base, 0) + 1
            names[population.id] = base if used[base] == 1 else f"{base}_{used[base]}"
        return names

    def _population_cte(
        self,
        population: Population,
        builder: _SetExpressionBuilder,
        warnings: List[str],
    ) -> str:
        if population.criteria is None:
            message = f"population '{population.type.value}' has no criteria"
            warnings.append(message)
            return f"-- WARNING: {message}\nSELECT person_id FROM DEMOG WHERE 1 = 0"
        text, _ = fold_clause(population.criteria, builder)
        return f"SELECT DISTINCT person_id\nFROM (\n{_indent(text)}\n) criteria"

    def _measure_result_cte(
        self,
        measure: Measure,
        population_ctes: Dict[str, str],
        dialect: DialectConfig,
        period: _Period,
        warnings: List[str],
    ) -> str:
        funnel: Dict[PopulationType, Population] = {}
        for population in measure.populations:
            if population.type in funnel:
                warnings.append(
                    f"more than one '{population.type.value}' population; "
                    "only the first feeds MEASURE_RESULT"
                )
                continue
            funnel[population.type] = population

        joins = []
        for population_type, population in funnel.items():
            alias = _FUNNEL_ALIASES[population_type]
            joins.append(
                f"LEFT JOIN {population_ctes[population.id]} {alias} "
                f"ON {alias}.person_id = d.person_id"
            )

        def member(population_type: PopulationType) -> Optional[str]:
            if population_type not in funnel:
                return None
            return f"{_FUNNEL_ALIASES[population_type]}.person_id IS NOT NULL"

        def has_criteria(population_type: PopulationType) -> bool:
            population = funnel.get(population_type)
            return bool(population and population.criteria is not None and population.criteria.children)

        ip = member(PopulationType.INITIAL_POPULATION) or "1 = 1"
        # A denominator without criteria is the initial population
        den = ip
        if has_criteria(PopulationType.DENOMINATOR):
            den = f"{ip} AND {member(PopulationType.DENOMINATOR)}"

        excluded = member(PopulationType.DENOMINATOR_EXCLUSION)
        exclusion = f"{den} AND {excluded}" if excluded else "1 = 0"
        not_excluded = f"{den} AND dex.person_id IS NULL" if excluded else den

        in_numerator = member(PopulationType.NUMERATOR)
        numerator = f"{not_excluded} AND {in_numerator}" if in_numerator else "1 = 0"

        excepted = member(PopulationType.DENOMINATOR_EXCEPTION)
        if excepted:
            not_met = f"{not_excluded} AND num.person_id IS NULL" if in_numerator else not_excluded
            exception = f"{not_met} AND {excepted}"
        else:
            exception = "1 = 0"

        columns = [
            "d.person_id",
            f"CASE WHEN {ip} THEN 1 ELSE 0 END AS initial_population",
            f"CASE WHEN {den} THEN 1 ELSE 0 END AS denominator",
            f"CASE WHEN {exclusion} THEN 1 ELSE 0 END AS denominator_exclusion",
            f"CASE WHEN {exception} THEN 1 ELSE 0 END AS denominator_exception",
            f"CASE WHEN {numerator} THEN 1 ELSE 0 END AS numerator",
        ]
        for population_type in (
            PopulationType.NUMERATOR_EXCLUSION,
            PopulationType.MEASURE_POPULATION,
            PopulationType.MEASURE_OBSERVATION,
        ):
            flag = member(population_type)
            if flag:
                columns.append(
                    f"CASE WHEN {flag} THEN 1 ELSE 0 END AS {population_type.value.replace('-', '_')}"
                )

        lines = ["SELECT"]
        lines.append(",\n".join(INDENT + c for c in columns))
        lines.append("FROM DEMOG d")
        lines.extend(joins)

        filters = self._global_filters(measure, dialect, period)
        if filters:
            lines.append("WHERE " + "\n  AND ".join(filters))
        return "\n".join(lines)

    def _global_filters(self, measure: Measure, dialect: DialectConfig, period: _Period) -> List[str]:
        gc = measure.global_constraints
        if gc is None:
            return []
        filters = []
        age = dialect.years_between.format(start="d.birth_date", end=period.end)
        if gc.age_min is not None:
            filters.append(f"{age} >= {gc.age_min}")
        if gc.age_max is not None:
            filters.append(f"{age} <= {gc.age_max}")
        if gc.gender is not None:
            filters.append(f"d.gender = {sql_literal(gc.gender.value)}")
        return filters


def timing_condition(
    table: CategoryTable,
    timing: Optional[TimingConstraint],
    period: _Period,
    dialect: DialectConfig,
) -> Tuple[str, Optional[str]]:
    """
    Translate a timing constraint into a date condition on the source table.

    Returns (condition, warning). Anchors other than the measurement period
    fall back to it and are reported.
    """
    column = f"{table.alias}.{table.date_column}"
    end_column = f"{table.alias}.{table.end_date_column}" if table.end_date_column else column
    during = f"{column} BETWEEN {period.start} AND {period.end}"
    if timing is None:
        return during, None

    warning = None
    if timing.anchor not in _MEASUREMENT_PERIOD_ANCHORS:
        warning = f"timing anchor '{single_line(timing.anchor)}' is not available in SQL; using the measurement period"

    op = timing.operator.strip().lower()
    if op in ("during", "starts during"):
        return during, warning
    if op == "ends during":
        return f"{end_column} BETWEEN {period.start} AND {period.end}", warning
    if op == "overlaps":
        return f"{column} <= {period.end} AND COALESCE({end_column}, {column}) >= {period.start}", warning
    if op == "before end of":
        return f"{column} < {period.end}", warning
    if op == "after start of":
        return f"{column} > {period.start}", warning
    if op == "within" and timing.quantity is not None:
        unit = _DATE_UNITS.get((timing.unit or "days").strip().lower(), "DAY")
        lower = dialect.date_add.format(unit=unit, amount=-timing.quantity, date=period.end)
        return f"{column} BETWEEN {lower} AND {period.end}", warning
    return during, warning or f"timing operator '{single_line(timing.operator)}' is not supported in SQL; using 'during'"


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def generate_sql(measure: Measure, dialect: Optional[str] = None) -> SqlGenerationResult:
    """Generate SQL for a registered dialect name (default from settings)."""
    return SqlGenerator().generate(measure, get_dialect(dialect or settings.DEFAULT_SQL_DIALECT))
