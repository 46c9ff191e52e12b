"""
Request and response models for the search API. Wire names are camelCase.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional, Union

Scalar = Union[str, int, float, bool]


class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query_text: str = Field(alias="queryText")
    top_k: Optional[int] = Field(default=None, alias="topK")
    filters: Optional[Dict[str, Union[Scalar, List[Scalar]]]] = None

    @field_validator('query_text')
    @classmethod
    def query_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('queryText cannot be empty')
        return v


class RecommendationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    catalog_item_id: str = Field(serialization_alias="catalogItemId")
    confidence_score: float = Field(serialization_alias="confidenceScore")
    rank: int
    supporting_hit_count: int = Field(serialization_alias="supportingHitCount")


class SearchResponse(BaseModel):
    recommendations: List[RecommendationResponse]
    query_latency_ms: float = Field(serialization_alias="queryLatencyMs")
    index_version: Optional[int] = Field(serialization_alias="indexVersion")
    degraded: bool = False


class ReindexRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    feed_path: Optional[str] = Field(default=None, alias="feedPath")
    records: Optional[List[Dict[str, Any]]] = None
    mode: str = "full"
    wait: bool = True

    @field_validator('mode')
    @classmethod
    def mode_must_be_valid(cls, v):
        valid_modes = ['full', 'incremental']
        if v not in valid_modes:
            raise ValueError(f'mode must be one of: {valid_modes}')
        return v


class ReindexAccepted(BaseModel):
    run_id: str = Field(serialization_alias="runId")


class CompactRequest(BaseModel):
    retain: Optional[List[int]] = None


class CompactResponse(BaseModel):
    dropped: List[int]
    retained: List[int]


class IndexStatusResponse(BaseModel):
    active_version: Optional[int]
    record_count: int
    dimension: int
    ann_backend: str
    ef_search: int
    versions: List[Dict[str, Any]]


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    active_version: Optional[int]
    record_count: int


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = {}


class ErrorResponse(BaseModel):
    error: ErrorBody
