from datetime import date as date_type, datetime
from typing import Any, List, Optional, Union

from pydantic import Field, field_validator, model_validator

from .base import FrozenCamelModel


def _coerce_date(value: Any) -> Optional[date_type]:
    """Lenient date parsing: unparseable values become None, never an error."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date_type):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date_type.fromisoformat(text[:10])
        except ValueError:
            return None
    return None


class ClinicalEvent(FrozenCamelModel):
    """A single coded data point in a patient record."""
    code: Optional[str] = None
    system: Optional[str] = None
    display: Optional[str] = None
    date: Optional[date_type] = None
    end_date: Optional[date_type] = None
    value: Optional[Union[float, str]] = None
    unit: Optional[str] = None
    status: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_source_date_keys(cls, data: Any) -> Any:
        # Diagnoses carry onsetDate, medications carry startDate
        if isinstance(data, dict) and not data.get("date"):
            data = dict(data)
            for key in ("onsetDate", "onset_date", "startDate", "start_date", "performedDate"):
                if data.get(key):
                    data["date"] = data[key]
                    break
        return data

    @field_validator("date", "end_date", mode="before")
    @classmethod
    def _parse_dates(cls, value: Any) -> Optional[date_type]:
        return _coerce_date(value)

    @property
    def numeric_value(self) -> Optional[float]:
        if isinstance(self.value, (int, float)):
            return float(self.value)
        if isinstance(self.value, str):
            try:
                return float(self.value)
            except ValueError:
                return None
        return None


class PatientRecord(FrozenCamelModel):
    id: str
    name: Optional[str] = None
    birth_date: Optional[date_type] = None
    gender: Optional[str] = None
    diagnoses: List[ClinicalEvent] = Field(default_factory=list)
    encounters: List[ClinicalEvent] = Field(default_factory=list)
    procedures: List[ClinicalEvent] = Field(default_factory=list)
    observations: List[ClinicalEvent] = Field(default_factory=list)
    medications: List[ClinicalEvent] = Field(default_factory=list)
    immunizations: List[ClinicalEvent] = Field(default_factory=list)

    @field_validator("birth_date", mode="before")
    @classmethod
    def _parse_birth_date(cls, value: Any) -> Optional[date_type]:
        return _coerce_date(value)

    def all_events(self) -> List[ClinicalEvent]:
        return (
            self.diagnoses + self.encounters + self.procedures
            + self.observations + self.medications + self.immunizations
        )
