"""
Runtime configuration for the ingestion service.
All values are read from the environment once at import; there is no hot reload.
"""

import os
from pathlib import Path

# Storage layout
DATA_DIR = os.getenv("DATA_DIR", "./data")
DB_PATH = os.getenv("DB_PATH", str(Path(DATA_DIR) / "sqlite" / "memories.db"))
THUMBS_DIR = os.getenv("THUMBS_DIR", str(Path(DATA_DIR) / "thumbs"))
VECTOR_DIR = os.getenv("VECTOR_DIR", str(Path(DATA_DIR) / "vectors"))
RETENTION_DAYS = int(os.getenv("RETENTION_DAYS", "14"))

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Capture source (polling API)
CAPTURE_BASE_URL = os.getenv("CAPTURE_BASE_URL", "http://localhost:3030")
CAPTURE_TIMEOUT_SEC = float(os.getenv("CAPTURE_TIMEOUT_SEC", "10"))
POLL_INTERVAL_SEC = float(os.getenv("POLL_INTERVAL_SEC", "5"))
POLL_BATCH_LIMIT = int(os.getenv("POLL_BATCH_LIMIT", "100"))

# Frame deduplication
DEDUP_THRESHOLD = float(os.getenv("DEDUP_THRESHOLD", "0.85"))
DEDUP_CACHE_SIZE = int(os.getenv("DEDUP_CACHE_SIZE", "100"))
DEDUP_WINDOW_SEC = float(os.getenv("DEDUP_WINDOW_SEC", "60"))
DUPLICATE_TEXT_POLICY = os.getenv("DUPLICATE_TEXT_POLICY", "index")  # index|drop
ARTIFACT_RETENTION = os.getenv("ARTIFACT_RETENTION", "keep")  # keep|delete_duplicates|delete_processed

# Vector overlay
VECTOR_ENABLED = os.getenv("VECTOR_ENABLED", "true").lower() == "true"
VECTOR_PROVIDER = os.getenv("VECTOR_PROVIDER", "faiss")  # memory|faiss
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "hash")  # hash|sentence|openai
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-MiniLM-L6-v2")
EMBED_DIM = int(os.getenv("EMBED_DIM", "384"))
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
EMBED_API_BASE = os.getenv("EMBED_API_BASE")
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "32"))
EMBED_MAX_QUEUE = int(os.getenv("EMBED_MAX_QUEUE", "1000"))
EMBED_RATE_LIMIT_PER_SEC = int(os.getenv("EMBED_RATE_LIMIT_PER_SEC", "10"))
EMBED_MAX_ATTEMPTS = int(os.getenv("EMBED_MAX_ATTEMPTS", "3"))
EMBED_BACKOFF_BASE_SEC = float(os.getenv("EMBED_BACKOFF_BASE_SEC", "1.0"))

# Search API
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8787"))

VERSION = "1.0.0"


def get_vector_store(dimension: int = None):
    """Get configured vector store implementation. Returns None if vector features disabled."""
    if not are_vector_features_enabled():
        return None

    dimension = dimension or EMBED_DIM
    if VECTOR_PROVIDER == "faiss":
        from ..vector.faiss_store import FaissVectorStore
        return FaissVectorStore(dimension=dimension, persist_dir=VECTOR_DIR)

    from ..vector.index import SimpleInMemoryVectorStore
    return SimpleInMemoryVectorStore()


def get_embedding_provider():
    """Get configured embedding provider implementation. Returns None if vector features disabled."""
    if not are_vector_features_enabled():
        return None

    if EMBED_PROVIDER == "openai":
        from ..vector.embeddings import OpenAIEmbedding
        return OpenAIEmbedding(api_key=OPENAI_API_KEY, base_url=EMBED_API_BASE, dimension=EMBED_DIM)
    elif EMBED_PROVIDER == "sentence":
        from ..vector.embeddings import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(EMBED_MODEL_NAME)

    from ..vector.embeddings import DeterministicHashEmbedding
    return DeterministicHashEmbedding(dimension=EMBED_DIM)


def are_vector_features_enabled():
    """Check if vector features are enabled."""
    return os.getenv("VECTOR_ENABLED", "true").lower() == "true"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_data_directories():
    """Create the data directory tree. Raises OSError when it cannot be created."""
    for path in (Path(DATA_DIR), Path(DB_PATH).parent, Path(THUMBS_DIR), Path(VECTOR_DIR)):
        path.mkdir(parents=True, exist_ok=True)


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if DUPLICATE_TEXT_POLICY not in ["index", "drop"]:
        issues.append(f"Invalid DUPLICATE_TEXT_POLICY: {DUPLICATE_TEXT_POLICY}")

    if ARTIFACT_RETENTION not in ["keep", "delete_duplicates", "delete_processed"]:
        issues.append(f"Invalid ARTIFACT_RETENTION: {ARTIFACT_RETENTION}")

    if VECTOR_PROVIDER not in ["memory", "faiss"]:
        issues.append(f"Invalid VECTOR_PROVIDER: {VECTOR_PROVIDER}")

    if EMBED_PROVIDER not in ["hash", "sentence", "openai"]:
        issues.append(f"Invalid EMBED_PROVIDER: {EMBED_PROVIDER}")

    if EMBED_PROVIDER == "openai" and are_vector_features_enabled() and not OPENAI_API_KEY:
        issues.append("EMBED_PROVIDER=openai requires OPENAI_API_KEY")

    if not 0.0 < DEDUP_THRESHOLD <= 1.0:
        issues.append("DEDUP_THRESHOLD must be in (0, 1]")

    if DEDUP_CACHE_SIZE < 1:
        issues.append("DEDUP_CACHE_SIZE must be >= 1")

    if POLL_INTERVAL_SEC <= 0:
        issues.append("POLL_INTERVAL_SEC must be > 0")

    if RETENTION_DAYS < 1:
        issues.append("RETENTION_DAYS must be >= 1")

    if EMBED_MAX_ATTEMPTS < 1:
        issues.append("EMBED_MAX_ATTEMPTS must be >= 1")

    return issues
