from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import Field

from .base import FrozenCamelModel


class TargetFormat(str, Enum):
    """Output formats that can carry manual overrides."""
    CQL = "cql"
    SQL = "sql"
    HDI_SQL = "hdi-sql"
    SYNAPSE_SQL = "synapse-sql"

    @property
    def comment_prefix(self) -> str:
        return "//" if self is TargetFormat.CQL else "--"

    @property
    def label(self) -> str:
        return {
            TargetFormat.CQL: "CQL",
            TargetFormat.SQL: "SQL",
            TargetFormat.HDI_SQL: "HDI SQL",
            TargetFormat.SYNAPSE_SQL: "SYNAPSE SQL",
        }[self]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OverrideKey(FrozenCamelModel):
    measure_id: str
    component_id: str
    target_format: TargetFormat

    def as_string(self) -> str:
        return f"{self.measure_id}::{self.component_id}::{self.target_format.value}"


class OverrideNote(FrozenCamelModel):
    """One entry of an override's append-only audit log."""
    author: str = "User"
    timestamp: datetime = Field(default_factory=utc_now)
    before_text: str = ""
    after_text: str = ""
    comment: str = ""
    change_type: Optional[str] = None


class Override(FrozenCamelModel):
    key: OverrideKey
    generated_snippet: str
    patched_snippet: str
    notes: List[OverrideNote] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
