"""
Vector overlay types - non-canonical, eventually consistent with the keyword store.
"""

from typing import Dict, Optional
import numpy as np
from dataclasses import dataclass, field


@dataclass
class VectorRecord:
    """Represents a vector record with metadata."""

    id: str
    """Memory record id; the same key as the keyword store row"""

    vector: Optional[np.ndarray]
    """The embedding of the record's text"""

    metadata: Dict[str, object] = field(default_factory=dict)
    """Minimal metadata (ts, app, url_host, window_title, media paths)"""


@dataclass
class QueryResult:
    """Represents a search result from vector store."""

    id: str
    """Identifier for the matching record"""

    score: float
    """Cosine similarity of the match"""

    metadata: Dict[str, object]
    """Metadata associated with the matched record"""


@dataclass
class IndexItem:
    """One unit of work for the vector indexer."""

    id: str
    text: str
    metadata: Dict[str, object] = field(default_factory=dict)
