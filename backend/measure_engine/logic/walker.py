"""
Shared tree walk used by both code generators and the evaluator.

Keeping a single recursion primitive means the CQL text, the SQL set
algebra and the validation trace all read a clause the same way:
uniform operator per clause, sibling_overrides ignored, NOT with more
than one child read as "not (all of the children)".
"""

from dataclasses import dataclass
from typing import Generic, List, Sequence, TypeVar

from ..schemas.ums import DataElement, LogicalClause, LogicalOperator

T = TypeVar("T")


@dataclass(frozen=True)
class ClauseShape:
    """How a clause should be combined, after malformed input is accounted for."""
    operator: LogicalOperator
    child_count: int

    @property
    def is_empty(self) -> bool:
        return self.child_count == 0

    @property
    def is_malformed_not(self) -> bool:
        # NOT joins a single child; more than one is negated as a conjunction
        return self.operator == LogicalOperator.NOT and self.child_count > 1


class ClauseVisitor(Generic[T]):
    """Callbacks for fold_clause. Subclasses implement both methods."""

    def visit_element(self, element: DataElement, depth: int) -> T:
        raise NotImplementedError

    def combine_clause(
        self,
        clause: LogicalClause,
        shape: ClauseShape,
        child_results: List[T],
        depth: int,
    ) -> T:
        raise NotImplementedError


def fold_clause(clause: LogicalClause, visitor: ClauseVisitor[T], depth: int = 0) -> T:
    """Post-order fold of a clause through the visitor."""
    child_results: List[T] = []
    for child in clause.children:
        if isinstance(child, LogicalClause):
            child_results.append(fold_clause(child, visitor, depth + 1))
        else:
            child_results.append(visitor.visit_element(child, depth + 1))
    shape = ClauseShape(operator=clause.operator, child_count=len(clause.children))
    return visitor.combine_clause(clause, shape, child_results, depth)


def combine_operator_results(operator: LogicalOperator, results: Sequence[bool]) -> bool:
    """
    Boolean reduction of a clause.

    Empty AND is vacuously true, empty OR is false, and an empty NOT has
    nothing to negate and is false. NOT over several children negates
    their conjunction.
    """
    if not results:
        return operator == LogicalOperator.AND
    if operator == LogicalOperator.AND:
        return all(results)
    if operator == LogicalOperator.OR:
        return any(results)
    return not all(results)
