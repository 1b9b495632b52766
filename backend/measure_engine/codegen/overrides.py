"""
Manual overrides on generated code.

Reviewers may hand-edit the code generated for one component (a data
element, clause or population) in one output format. The generators never
see those edits: apply_overrides() runs on the generated text afterwards
and prepends an audit block, leaving the generated text itself untouched.
"""

import logging
from typing import Iterable, List, Optional

from ..logic.tree import find_by_id
from ..schemas.override import Override, OverrideKey, OverrideNote, TargetFormat, utc_now
from ..schemas.results import OverrideApplication
from ..schemas.ums import Measure
from .text import single_line

logger = logging.getLogger(__name__)


def format_timestamp(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC")


def component_exists(measure: Measure, component_id: str) -> bool:
    """True if the id names a population or any node of a population's tree."""
    for population in measure.populations:
        if population.id == component_id:
            return True
        if population.criteria is not None and find_by_id(population.criteria, component_id) is not None:
            return True
    return False


def _comment_lines(prefix: str, text: str, indent: str = "  ") -> List[str]:
    lines = text.splitlines() or [""]
    return [f"{prefix}{indent}{line}".rstrip() for line in lines]


def format_note(note: OverrideNote, target_format: TargetFormat) -> str:
    line = (
        f"{target_format.comment_prefix} [EDIT NOTE] "
        f"({format_timestamp(note.timestamp)}): {single_line(note.comment)}"
    )
    if note.change_type:
        line += f" [{single_line(note.change_type)}]"
    return line


def _render_override(override: Override, measure: Measure) -> List[str]:
    target_format = override.key.target_format
    prefix = target_format.comment_prefix
    component_id = override.key.component_id

    heading = f"{prefix} [{target_format.label} OVERRIDE] component {single_line(component_id)}"
    if not component_exists(measure, component_id):
        heading += " (component not found in current measure)"
    lines = [heading]
    lines.extend(format_note(note, target_format) for note in override.notes)
    lines.append(f"{prefix} generated:")
    lines.extend(_comment_lines(prefix, override.generated_snippet))
    lines.append(f"{prefix} patched:")
    lines.extend(_comment_lines(prefix, override.patched_snippet))
    return lines


def matching_overrides(
    measure: Measure,
    target_format: TargetFormat,
    overrides: Iterable[Override],
) -> List[Override]:
    """Overrides for this measure and format, in key order."""
    measure_ids = {measure.id, measure.metadata.measure_id} - {""}
    matched = [
        o for o in overrides
        if o.key.measure_id in measure_ids and o.key.target_format == target_format
    ]
    return sorted(matched, key=lambda o: o.key.as_string())


def apply_overrides(
    generated_text: str,
    measure: Measure,
    target_format: TargetFormat,
    overrides: Iterable[Override],
) -> OverrideApplication:
    """
    Prepend the audit block for every override matching this measure/format.

    With no matching overrides the generated text comes back unchanged.
    """
    target_format = TargetFormat(target_format)
    matched = matching_overrides(measure, target_format, overrides)
    if not matched:
        return OverrideApplication(patched_text=generated_text, override_count=0)

    prefix = target_format.comment_prefix
    rule = f"{prefix} " + "=" * 60
    lines = [
        rule,
        f"{prefix} {target_format.label} OVERRIDES APPLIED: {len(matched)}",
    ]
    lines.extend(f"{prefix}   - {single_line(o.key.component_id)}" for o in matched)
    lines.append(rule)
    for override in matched:
        lines.append("")
        lines.extend(_render_override(override, measure))
    lines.append(rule)
    lines.append("")

    logger.debug(
        "Applied %d %s override(s) to %s",
        len(matched), target_format.value, measure.key_id,
    )
    return OverrideApplication(
        patched_text="\n".join(lines) + "\n" + generated_text,
        override_count=len(matched),
    )


# =============================================================================
# OVERRIDE LIFECYCLE
# =============================================================================

def new_override(
    key: OverrideKey,
    generated_snippet: str,
    patched_snippet: str,
    comment: str = "",
    author: str = "User",
    change_type: Optional[str] = None,
) -> Override:
    """First edit of a component: the record starts with one note."""
    now = utc_now()
    note = OverrideNote(
        author=author,
        timestamp=now,
        before_text=generated_snippet,
        after_text=patched_snippet,
        comment=comment,
        change_type=change_type,
    )
    return Override(
        key=key,
        generated_snippet=generated_snippet,
        patched_snippet=patched_snippet,
        notes=[note],
        created_at=now,
        updated_at=now,
    )


def append_note(
    override: Override,
    patched_snippet: str,
    comment: str = "",
    author: str = "User",
    change_type: Optional[str] = None,
) -> Override:
    """Later edit: new patched text, one more note, earlier notes untouched."""
    now = utc_now()
    note = OverrideNote(
        author=author,
        timestamp=now,
        before_text=override.patched_snippet,
        after_text=patched_snippet,
        comment=comment,
        change_type=change_type,
    )
    return override.model_copy(update={
        "patched_snippet": patched_snippet,
        "notes": list(override.notes) + [note],
        "updated_at": now,
    })
