"""
Application configuration (env, settings, constants).

Responsibility: Centralize config loading, environment variables, and app-wide
constants. Keeps the rest of the app decoupled from how config is sourced.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# Conversation store (SQLite file, relative to project root unless absolute)
CHAT_DB_PATH: str = os.getenv("CHAT_DB_PATH", "data/chat.db").strip() or "data/chat.db"

# Milvus Cloud (from env)
MILVUS_URI: str = os.getenv("MILVUS_URI", "").strip()
MILVUS_TOKEN: str = os.getenv("MILVUS_TOKEN", "").strip()
COLLECTION_NAME: str = os.getenv("COLLECTION_NAME", "documents").strip() or "documents"

# Hugging Face (embeddings / fallback LLM)
HF_API_KEY: str = os.getenv("HF_API_KEY", "").strip()
HF_EMBED_MODEL: str = "sentence-transformers/all-MiniLM-L6-v2"
HF_CHAT_URL: str = "https://router.huggingface.co/v1/chat/completions"
HF_LLM_MODEL: str = (
    os.getenv("HF_LLM_MODEL", "meta-llama/Llama-3.2-3B-Instruct").strip()
    or "meta-llama/Llama-3.2-3B-Instruct"
)

# OpenAI (primary LLM). When set, generation uses OpenAI instead of Hugging Face.
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_LLM_MODEL: str = (
    os.getenv("OPENAI_LLM_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"
)
# Smaller model for planner / decision / extraction calls
OPENAI_FAST_MODEL: str = (
    os.getenv("OPENAI_FAST_MODEL", OPENAI_LLM_MODEL).strip() or OPENAI_LLM_MODEL
)

# API timeouts (seconds)
EMBED_API_TIMEOUT: float = 30.0
LLM_API_TIMEOUT: float = 60.0
SEARCH_API_TIMEOUT: float = 30.0

# Retrieval
SEARCH_TOP_K: int = _env_int("SEARCH_TOP_K", 2)
RETRIEVAL_CONCURRENCY: int = _env_int("RETRIEVAL_CONCURRENCY", 3)
PROBE_QUESTIONS_PER_DOCUMENT: int = 3
MAX_SNIPPET_CHARS: int = 400

# Generation
ANSWER_MAX_TOKENS: int = _env_int("ANSWER_MAX_TOKENS", 8192)
ANSWER_TEMPERATURE: float = 0.2
PLANNER_MAX_TOKENS: int = 512
PLANNER_HISTORY_TURNS: int = 6

# Conversation upkeep
SUMMARY_EVERY_EXCHANGES: int = _env_int("SUMMARY_EVERY_EXCHANGES", 5)
SESSION_TITLE_MAX_CHARS: int = 30
RUN_INTEGRITY_ON_STARTUP: bool = _env_bool("RUN_INTEGRITY_ON_STARTUP", True)
