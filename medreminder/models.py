# medreminder/models.py
import json
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, tzinfo
from typing import Optional, List, Dict, Any, Sequence

from .errors import ValidationError, CorruptBlobError

STORAGE_KEY = "medicines"

def _is_int(v) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)

@dataclass(frozen=True)
class Medication:
    id: str
    name: str
    dosage: str
    start_time: datetime
    interval_hours: int
    total_days: int
    is_active: bool = True
    notes: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValidationError("id must be a non-empty string")
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValidationError("name must be a non-empty string")
        if not isinstance(self.dosage, str):
            raise ValidationError("dosage must be a string")
        if not isinstance(self.start_time, datetime):
            raise ValidationError("start_time must be a datetime")
        if self.start_time.tzinfo is None or self.start_time.utcoffset() is None:
            raise ValidationError("start_time must be timezone-aware")
        if not _is_int(self.interval_hours) or self.interval_hours < 1:
            raise ValidationError(f"interval_hours must be an integer >= 1, got {self.interval_hours!r}")
        if not _is_int(self.total_days) or self.total_days < 1:
            raise ValidationError(f"total_days must be an integer >= 1, got {self.total_days!r}")
        if not isinstance(self.is_active, bool):
            raise ValidationError("is_active must be a bool")
        if self.notes is not None and not isinstance(self.notes, str):
            raise ValidationError("notes must be a string or None")

    @classmethod
    def new(cls, name: str, dosage: str, start_time: datetime, interval_hours: int,
            total_days: int, notes: Optional[str] = None, is_active: bool = True) -> "Medication":
        return cls(
            id=uuid.uuid4().hex,
            name=name,
            dosage=dosage,
            start_time=start_time,
            interval_hours=interval_hours,
            total_days=total_days,
            is_active=is_active,
            notes=notes,
        )

    def replace(self, **changes) -> "Medication":
        return replace(self, **changes)

    @property
    def interval(self) -> timedelta:
        return timedelta(hours=self.interval_hours)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "dosage": self.dosage,
            "startTime": self.start_time.isoformat(),
            "intervalHours": self.interval_hours,
            "totalDays": self.total_days,
            "isActive": self.is_active,
            "notes": self.notes,
        }

    @classmethod
    def from_record(cls, rec: Dict[str, Any], default_tz: Optional[tzinfo] = None) -> "Medication":
        """
        Build from a persisted record. A missing isActive reads as True.
        Legacy records wrote local times without an offset; those are
        interpreted in default_tz (or the system local zone).
        """
        start = datetime.fromisoformat(rec["startTime"])
        if start.tzinfo is None:
            start = start.replace(tzinfo=default_tz) if default_tz else start.astimezone()
        return cls(
            id=str(rec["id"]),
            name=rec["name"],
            dosage=rec.get("dosage") or "",
            start_time=start,
            interval_hours=rec["intervalHours"],
            total_days=rec["totalDays"],
            is_active=rec.get("isActive", True),
            notes=rec.get("notes"),
        )

# -------------------------
# Blob (de)serialization
# -------------------------
def serialize_medications(meds: Sequence[Medication]) -> bytes:
    return json.dumps([m.to_record() for m in meds], ensure_ascii=False).encode("utf-8")

def deserialize_medications(blob: bytes, default_tz: Optional[tzinfo] = None) -> List[Medication]:
    try:
        decoded = json.loads(blob.decode("utf-8"))
        if not isinstance(decoded, list):
            raise TypeError(f"expected a JSON array, got {type(decoded).__name__}")
        return [Medication.from_record(rec, default_tz) for rec in decoded]
    except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as exc:
        # ValidationError is a ValueError: an invalid record makes the blob corrupt
        raise CorruptBlobError(f"unreadable medication blob: {exc}") from exc
