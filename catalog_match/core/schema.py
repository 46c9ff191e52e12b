"""
Domain records shared by indexing and querying.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Scalar = Union[str, int, float, bool, None]


class HistoricalRecord(BaseModel):
    """One historical request narrative from the extraction feed."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    text: str
    catalog_item_id: str = Field(alias="catalogItemId")
    timestamp: datetime
    metadata: Dict[str, Scalar] = Field(default_factory=dict)

    @field_validator('id', 'catalog_item_id')
    @classmethod
    def identifiers_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('identifier cannot be empty')
        return v.strip()

    @field_validator('text')
    @classmethod
    def text_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('text cannot be empty')
        return v

    @field_validator('metadata', mode='before')
    @classmethod
    def metadata_defaults_to_empty(cls, v):
        return {} if v is None else v


@dataclass(frozen=True)
class Recommendation:
    catalog_item_id: str
    confidence_score: float
    supporting_hit_count: int
    rank: int
    max_similarity: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "catalog_item_id": self.catalog_item_id,
            "confidence_score": self.confidence_score,
            "supporting_hit_count": self.supporting_hit_count,
            "rank": self.rank,
            "max_similarity": self.max_similarity,
        }


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string stored alongside an index entry."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)
