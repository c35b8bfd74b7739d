"""Configuration management for the PrivatePDF RAG backend."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Ollama
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gemma3:4b-it-q4_K_M")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "nomic-embed-text")

# Optional Supabase chunk store (in-memory store is used when unset)
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
ROUTING_LOG_FILE = os.getenv("ROUTING_LOG_FILE", "logs/routing_decisions.jsonl")

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

# Timeouts (seconds)
STATUS_TIMEOUT = 5.0
EMBEDDING_TIMEOUT = 30.0
CHAT_TIMEOUT = 120.0
STREAM_TIMEOUT = 1800.0  # large local models can take minutes

# Search Configuration
DEFAULT_TOP_K = 10
DEFAULT_SIMILARITY_THRESHOLD = 0.5
DEFAULT_MMR_LAMBDA = 0.85

# Semantic Cache Configuration
CACHE_MAX_ENTRIES_PER_DOC = 50
CACHE_SIMILARITY_THRESHOLD = 0.95
CACHE_MAX_AGE_SECONDS = 24 * 60 * 60

# Generation Configuration
MODEL_LOADING_MAX_RETRIES = 5
MODEL_LOADING_BACKOFF_SECONDS = 2.0
DEFAULT_TOP_P = 0.9

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
