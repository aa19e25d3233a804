from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Classification(str, Enum):
    """Outcome of comparing an observed file against its ledger record."""

    NEW = "new"
    UP_TO_DATE = "up_to_date"
    MOVED = "moved"
    NEEDS_REENCODE = "needs_reencode"


WORK_CLASSIFICATIONS = frozenset(
    {Classification.NEW, Classification.NEEDS_REENCODE}
)


class Record(BaseModel):
    """Ledger value stored under a content fingerprint."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")

    absolute_path: str = Field(alias="absolutePath")
    encoder_identity: str = Field(default="", alias="encoderIdentity")
    pending: bool = False

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str | bytes) -> Record:
        return cls.model_validate_json(data)


class Observation(BaseModel):
    """Freshly observed state of a file on disk."""

    model_config = ConfigDict(frozen=True)

    absolute_path: str
    fingerprint: str
    encoder_identity: str = ""


class Decision(BaseModel):
    """A classification and the record it implies for the ledger."""

    model_config = ConfigDict(frozen=True)

    classification: Classification
    record: Record

    @property
    def counts_as_work(self) -> bool:
        return self.classification in WORK_CLASSIFICATIONS
