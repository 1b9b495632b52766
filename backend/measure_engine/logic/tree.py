"""
Pure helpers over the UMS logic tree.

Nothing here mutates its input: every update returns a new tree. Absent
ids are reported as None, never raised.
"""

from typing import Any, Iterator, List, Mapping, Optional, Union

from ..schemas.ums import (
    DataElement,
    Gender,
    LogicalClause,
    LogicalOperator,
    SiblingOverride,
)

LogicNode = Union[DataElement, LogicalClause]


# =============================================================================
# TRAVERSAL
# =============================================================================

def is_data_element(node: Any) -> bool:
    return isinstance(node, DataElement)


def is_logical_clause(node: Any) -> bool:
    return isinstance(node, LogicalClause)


def walk_data_elements(clause: LogicalClause) -> Iterator[DataElement]:
    """Depth-first, left-to-right over every leaf of the clause."""
    for child in clause.children:
        if isinstance(child, DataElement):
            yield child
        elif isinstance(child, LogicalClause):
            yield from walk_data_elements(child)


def walk_clauses(clause: LogicalClause) -> Iterator[LogicalClause]:
    """The clause itself, then every nested clause depth-first."""
    yield clause
    for child in clause.children:
        if isinstance(child, LogicalClause):
            yield from walk_clauses(child)


def find_by_id(clause: LogicalClause, node_id: str) -> Optional[LogicNode]:
    if clause.id == node_id:
        return clause
    for child in clause.children:
        if child.id == node_id:
            return child
        if isinstance(child, LogicalClause):
            found = find_by_id(child, node_id)
            if found is not None:
                return found
    return None


def tree_depth(clause: LogicalClause) -> int:
    """Number of clause levels; a clause holding only leaves has depth 1."""
    nested = [tree_depth(c) for c in clause.children if isinstance(c, LogicalClause)]
    return 1 + max(nested, default=0)


def count_nodes(clause: LogicalClause) -> int:
    total = 1
    for child in clause.children:
        total += count_nodes(child) if isinstance(child, LogicalClause) else 1
    return total


def required_gender(element: DataElement) -> Optional[Gender]:
    """
    The sex a demographic element requires.

    An explicit ``gender_value`` wins; otherwise "female" or "male" in the
    description is read as the requirement ("female" is checked first since
    it contains "male").
    """
    if element.gender_value is not None:
        return element.gender_value
    lowered = element.description.lower()
    if "female" in lowered:
        return Gender.FEMALE
    if "male" in lowered:
        return Gender.MALE
    return None


# =============================================================================
# IMMUTABLE UPDATE
# =============================================================================

def _apply_patch(node: LogicNode, patch: Union[LogicNode, Mapping[str, Any]]) -> LogicNode:
    if isinstance(patch, (DataElement, LogicalClause)):
        return patch
    return node.model_copy(update=dict(patch), deep=True)


def replace_by_id(
    clause: LogicalClause,
    node_id: str,
    patch: Union[LogicNode, Mapping[str, Any]],
) -> LogicalClause:
    """
    Return a copy of ``clause`` with node ``node_id`` replaced or updated.

    ``patch`` is either a replacement node or a mapping of field updates
    (snake_case field names). Every clause along the path is copied; an
    unknown id yields a structurally equal copy.
    """
    if clause.id == node_id:
        result = _apply_patch(clause, patch)
        if isinstance(result, LogicalClause):
            return result
        # A root clause can only be replaced by another clause
        return clause.model_copy(deep=True)

    new_children: List[LogicNode] = []
    for child in clause.children:
        if child.id == node_id:
            new_children.append(_apply_patch(child, patch))
        elif isinstance(child, LogicalClause):
            new_children.append(replace_by_id(child, node_id, patch))
        else:
            new_children.append(child.model_copy(deep=True))
    return clause.model_copy(update={"children": new_children})


# =============================================================================
# OPERATORS
# =============================================================================

def _pair_matches(override: SiblingOverride, i: int, j: int) -> bool:
    return {override.from_index, override.to_index} == {i, j}


def resolve_operator(clause: LogicalClause, i: int, j: int) -> LogicalOperator:
    """Connective shown between siblings i and j (editor display only)."""
    for override in clause.sibling_overrides or []:
        if _pair_matches(override, i, j):
            return override.operator
    return clause.operator


def set_operator_between(
    clause: LogicalClause,
    i: int,
    j: int,
    operator: LogicalOperator,
) -> LogicalClause:
    """Record a pending per-pair connective; equal to the default clears it."""
    remaining = [o for o in clause.sibling_overrides or [] if not _pair_matches(o, i, j)]
    if operator != clause.operator:
        remaining.append(SiblingOverride(
            from_index=min(i, j),
            to_index=max(i, j),
            operator=operator,
        ))
    return clause.model_copy(update={"sibling_overrides": remaining or None})


def _shift_overrides(
    overrides: Optional[List[SiblingOverride]],
    index: int,
) -> Optional[List[SiblingOverride]]:
    """Drop pairs touching the nested children and re-index pairs to their right."""
    if not overrides:
        return None
    shifted = []
    for o in overrides:
        low, high = min(o.from_index, o.to_index), max(o.from_index, o.to_index)
        if low in (index, index + 1) or high in (index, index + 1):
            continue
        if low > index + 1:
            low, high = low - 1, high - 1
        shifted.append(SiblingOverride(from_index=low, to_index=high, operator=o.operator))
    return shifted or None


def change_connective(
    clause: LogicalClause,
    index: int,
    operator: LogicalOperator,
    new_clause_id: Optional[str] = None,
) -> LogicalClause:
    """
    Change the connective between ``children[index]`` and ``children[index + 1]``.

    Equal to the clause operator: no-op, the same clause is returned.
    Otherwise the two children are wrapped in a new clause carrying
    ``operator``, which takes their place (the parent shrinks by one).
    """
    operator = LogicalOperator(operator)
    if operator == clause.operator:
        return clause
    if index < 0 or index + 1 >= len(clause.children):
        return clause

    left, right = clause.children[index], clause.children[index + 1]
    nested = LogicalClause(
        id=new_clause_id or f"{clause.id}-{left.id}-{right.id}",
        operator=operator,
        children=[left, right],
        description=f"{operator.value} Group",
        review_status="pending",
        confidence="high",
    )
    children = list(clause.children[:index]) + [nested] + list(clause.children[index + 2:])
    return clause.model_copy(update={
        "children": children,
        "sibling_overrides": _shift_overrides(clause.sibling_overrides, index),
    })


def change_connective_by_id(
    root: LogicalClause,
    clause_id: str,
    index: int,
    operator: LogicalOperator,
    new_clause_id: Optional[str] = None,
) -> LogicalClause:
    """Apply change_connective to a nested clause; unknown id returns root unchanged."""
    target = find_by_id(root, clause_id)
    if not isinstance(target, LogicalClause):
        return root
    updated = change_connective(target, index, operator, new_clause_id)
    if updated is target:
        return root
    return replace_by_id(root, clause_id, updated)
