"""
Vector store records: what is stored per record and what a search returns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

import numpy as np


@dataclass(frozen=True)
class IndexEntry:
    """Represents one indexed historical record."""

    record_id: str
    """Identifier of the source historical record"""

    vector: np.ndarray
    """Unit-length embedding of the record text"""

    catalog_item_id: str
    """Ground-truth catalog label of the record"""

    metadata: Dict[str, object] = field(default_factory=dict)
    """Scalar metadata carried from the extraction feed"""

    index_version: Optional[int] = None
    """Version the entry belongs to; assigned by the store on upsert"""

    timestamp: Optional[datetime] = None
    """When the underlying request happened"""


@dataclass(frozen=True)
class SearchHit:
    """Represents a nearest-neighbor match from the vector store."""

    record_id: str
    """Identifier of the matching record"""

    catalog_item_id: str
    """Catalog label of the matching record"""

    similarity_score: float
    """Cosine similarity to the query (-1..1)"""

    index_version: int
    """Version the hit was read from; with record_id it references the entry"""

    timestamp: Optional[datetime] = None
    """Timestamp of the matching record"""

    metadata: Dict[str, object] = field(default_factory=dict)
    """Metadata of the matching record"""
