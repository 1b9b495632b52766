"""In-memory override store shared by the API routes."""

import logging
import threading
from typing import Dict, List, Optional

from ..codegen.overrides import append_note, new_override
from ..core.errors import OverrideNotFoundError
from ..schemas.override import Override, OverrideKey, TargetFormat

logger = logging.getLogger(__name__)


class OverrideStore:
    """
    Thread-safe map of OverrideKey -> Override.

    Readers get snapshots (plain lists of frozen records) so a generation
    request never observes a half-applied edit.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._overrides: Dict[OverrideKey, Override] = {}

    def record_edit(
        self,
        key: OverrideKey,
        generated_snippet: str,
        patched_snippet: str,
        comment: str = "",
        author: str = "User",
        change_type: Optional[str] = None,
    ) -> Override:
        with self._lock:
            existing = self._overrides.get(key)
            if existing is None:
                override = new_override(key, generated_snippet, patched_snippet, comment, author, change_type)
            else:
                override = append_note(existing, patched_snippet, comment, author, change_type)
            self._overrides[key] = override
        logger.info("Recorded override %s (%d note(s))", key.as_string(), len(override.notes))
        return override

    def revert(self, key: OverrideKey) -> Override:
        with self._lock:
            if key not in self._overrides:
                raise OverrideNotFoundError(key.as_string())
            removed = self._overrides.pop(key)
        logger.info("Reverted override %s", key.as_string())
        return removed

    def get(self, key: OverrideKey) -> Optional[Override]:
        with self._lock:
            return self._overrides.get(key)

    def snapshot(
        self,
        measure_id: str,
        target_format: Optional[TargetFormat] = None,
    ) -> List[Override]:
        with self._lock:
            overrides = list(self._overrides.values())
        return [
            o for o in overrides
            if o.key.measure_id == measure_id
            and (target_format is None or o.key.target_format == target_format)
        ]

    def clear(self) -> None:
        with self._lock:
            self._overrides.clear()
