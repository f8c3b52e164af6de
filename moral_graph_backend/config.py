"""Shared environment configuration constants for the moral graph backend."""
import logging
import os

# --- API Keys ---
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")

# --- Database ---
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+asyncpg://localhost:5432/moral_graph")

# --- Embeddings ---
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSIONS = int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))

# --- Deduplication ---
DEDUPLICATION_BATCH_LIMIT = int(os.getenv("DEDUPLICATION_BATCH_LIMIT", "50"))
LLM_ONLY_CLUSTER_LIMIT = int(os.getenv("LLM_ONLY_CLUSTER_LIMIT", "20"))
CANONICAL_MATCH_DISTANCE = float(os.getenv("CANONICAL_MATCH_DISTANCE", "0.1"))
NEAR_IDENTICAL_DISTANCE = float(os.getenv("NEAR_IDENTICAL_DISTANCE", "0.01"))
CANONICAL_SEARCH_LIMIT = int(os.getenv("CANONICAL_SEARCH_LIMIT", "5"))
DBSCAN_EPS = float(os.getenv("DBSCAN_EPS", "0.2"))
DBSCAN_MIN_SAMPLES = int(os.getenv("DBSCAN_MIN_SAMPLES", "2"))

# --- Contexts ---
CONTEXT_SEARCH_LIMIT = int(os.getenv("CONTEXT_SEARCH_LIMIT", "5"))

# --- Graph summary ---
PAGERANK_DAMPING = float(os.getenv("PAGERANK_DAMPING", "0.85"))
PAGERANK_MAX_ITERATIONS = int(os.getenv("PAGERANK_MAX_ITERATIONS", "100"))
PAGERANK_TOLERANCE = float(os.getenv("PAGERANK_TOLERANCE", "1e-10"))

# --- Hypotheses ---
HYPOTHESIS_SHORTLIST_SIZE = int(os.getenv("HYPOTHESIS_SHORTLIST_SIZE", "12"))
DEFAULT_DRAW_SIZE = int(os.getenv("DEFAULT_DRAW_SIZE", "5"))
DEFAULT_SAMPLER_WEIGHTS = {
    "popularity": float(os.getenv("SAMPLER_WEIGHT_POPULARITY", "0.3")),
    "convergence": float(os.getenv("SAMPLER_WEIGHT_CONVERGENCE", "0.3")),
    "sparsity": float(os.getenv("SAMPLER_WEIGHT_SPARSITY", "0.4")),
}

# --- LLM ---
ONLINE_CHAT_MODEL = os.getenv("ONLINE_CHAT_MODEL", "claude-3-7-sonnet-20250219")
STRUCTURED_OUTPUT_ATTEMPTS = int(os.getenv("STRUCTURED_OUTPUT_ATTEMPTS", "3"))

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
