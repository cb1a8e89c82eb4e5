"""Configuration module for the narrative engine."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API Configuration
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5")
LABELING_MODEL = os.getenv("LABELING_MODEL", "claude-haiku-4-5")
LLM_PROVIDER = "anthropic"
LLM_TEMPERATURE = 0  # For structured extraction consistency
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "8192"))

# Embedding Configuration
EMBEDDING_PROVIDER = "sentence-transformers"
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "all-MiniLM-L6-v2")
EMBEDDING_BATCH_SIZE = 64
EMBEDDING_MAX_RETRIES = 3

# Per-task provider/model defaults (overridable in the task_configs table)
TASK_DEFAULTS = {
    "embeddings": {"provider": EMBEDDING_PROVIDER, "model": EMBEDDING_MODEL},
    "microFragmentLabeling": {"provider": LLM_PROVIDER, "model": LABELING_MODEL},
    "visualAnalysis": {"provider": LLM_PROVIDER, "model": ANTHROPIC_MODEL},
    "sceneExtraction": {"provider": LLM_PROVIDER, "model": ANTHROPIC_MODEL},
    "timelineResolution": {"provider": EMBEDDING_PROVIDER, "model": EMBEDDING_MODEL},
    "aggregation": {"provider": LLM_PROVIDER, "model": ANTHROPIC_MODEL},
}

# Budget Configuration
DEFAULT_TASK_DAILY_LIMIT = int(os.getenv("DEFAULT_TASK_DAILY_LIMIT", "10000"))
DEFAULT_MODEL_DAILY_LIMIT = int(os.getenv("DEFAULT_MODEL_DAILY_LIMIT", "10000"))
DISABLE_USAGE_LIMITS_KEY = "disableUsageLimits"

# Segmentation & Chunking Configuration
CHUNK_SIZE_CHARS = int(os.getenv("CHUNK_SIZE_CHARS", "1000"))
CHUNK_OVERLAP_CHARS = int(os.getenv("CHUNK_OVERLAP_CHARS", "100"))
CHUNK_UPSERT_BATCH = 50
MAX_SCENE_PROMPT_CHARS = 100_000
MAX_LLM_CALLS_PER_INGEST = int(os.getenv("MAX_LLM_CALLS_PER_INGEST", "500"))

# Labeling Queue Configuration
MICRO_FRAGMENT_MAX_CHARS = 100
LABELING_BATCH_SIZE = 500
LABELING_DAILY_REQUEST_CEILING = 5000
LABELING_POLL_INTERVAL = 10.0  # seconds

# Timeline Configuration
TIMELINE_TOP_K = 12
TIMELINE_SCORE_THRESHOLD = float(os.getenv("TIMELINE_SCORE_THRESHOLD", "0.65"))
TIMELINE_PADDING = 2

# Attribute Extraction Configuration
GLOBAL_SEARCH_TOP_K = 40
WINDOW_SEARCH_TOP_K = 30
REFINE_SEARCH_TOP_K = 5
MAX_ATTRIBUTES_TO_REFINE = 5
MAX_QUERIES_PER_ATTRIBUTE = 3
MAX_CONTEXT_FRAGMENTS = 80
POOR_CONFIDENCE_THRESHOLD = 0.15
SEARCH_WORKERS = 4

# Aggregation Configuration
AGGREGATION_TOP_ENTITIES = 30
AGGREGATION_SAMPLES_PER_ENTITY = 20
AGGREGATION_BLOCK_SIZE = 50

# Storage Configuration
DB_PATH = Path(os.getenv("DB_PATH", "./output/engine.db"))
CHROMA_PATH = Path(os.getenv("CHROMA_PATH", "./output/chroma"))
CHROMA_COLLECTION = os.getenv("CHROMA_COLLECTION", "book_fragments")

# Ensure output directories exist
DB_PATH.parent.mkdir(parents=True, exist_ok=True)
CHROMA_PATH.mkdir(parents=True, exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
