"""Structural lint for a measure's logic tree. Findings are advisory only."""

from dataclasses import dataclass
from typing import List, Optional

from ..schemas.ums import (
    DataElement,
    ElementKind,
    LogicalClause,
    LogicalOperator,
    Measure,
)
from .tree import walk_clauses, walk_data_elements


@dataclass(frozen=True)
class Diagnostic:
    code: str
    message: str
    node_id: Optional[str] = None


def diagnose_clause(clause: LogicalClause) -> List[Diagnostic]:
    findings: List[Diagnostic] = []
    for c in walk_clauses(clause):
        if not c.children:
            findings.append(Diagnostic(
                "empty-clause",
                f"clause '{c.id}' has no children",
                c.id,
            ))
        if c.operator == LogicalOperator.NOT and len(c.children) > 1:
            findings.append(Diagnostic(
                "malformed-not",
                f"NOT clause '{c.id}' has {len(c.children)} children; "
                "negating their conjunction",
                c.id,
            ))
        if c.sibling_overrides:
            findings.append(Diagnostic(
                "pending-connectives",
                f"clause '{c.id}' has {len(c.sibling_overrides)} uncommitted "
                "connective edit(s); they are ignored until nested",
                c.id,
            ))
    return findings


def element_needs_value_set(element: DataElement) -> bool:
    """Demographic elements are decided from the patient record, not codes."""
    return element.element_kind != ElementKind.DEMOGRAPHIC


def diagnose_measure(measure: Measure) -> List[Diagnostic]:
    """All findings for a measure, in population order."""
    findings: List[Diagnostic] = []
    index = measure.value_set_index()

    for vs in measure.value_sets:
        if not vs.codes:
            findings.append(Diagnostic(
                "empty-value-set",
                f"value set '{vs.name}' has no codes",
                vs.id,
            ))
        for dup in vs.duplicate_codes():
            findings.append(Diagnostic(
                "duplicate-code",
                f"value set '{vs.name}' lists {dup.system} code {dup.code} more than once",
                vs.id,
            ))

    for population in measure.populations:
        if population.criteria is None:
            findings.append(Diagnostic(
                "missing-criteria",
                f"population '{population.type.value}' has no criteria",
                population.id,
            ))
            continue
        findings.extend(diagnose_clause(population.criteria))
        for element in walk_data_elements(population.criteria):
            missing = [ref for ref in element.value_set_refs if ref not in index]
            for ref in missing:
                findings.append(Diagnostic(
                    "unresolved-value-set",
                    f"element '{element.description or element.id}' references "
                    f"unknown value set '{ref}'",
                    element.id,
                ))
            if element_needs_value_set(element) and not element.value_set_refs:
                findings.append(Diagnostic(
                    "missing-value-set",
                    f"no value set attached to '{element.description or element.id}'",
                    element.id,
                ))
    return findings
