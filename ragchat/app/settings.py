from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    metrics_enabled: bool = _flag("RAG_METRICS_ENABLED", "true")
    file_max_bytes: int = int(os.getenv("RAG_FILE_MAX_BYTES", "20971520"))

    chunk_size: int = int(os.getenv("RAG_CHUNK_SIZE", "1000"))
    chunk_overlap: int = int(os.getenv("RAG_CHUNK_OVERLAP", "100"))

    embedding_provider: str = os.getenv("EMBEDDING_PROVIDER", "hash")
    embedding_dimension: int = int(os.getenv("EMBEDDING_DIMENSION", "256"))
    embedding_batch_size: int = int(os.getenv("EMBEDDING_BATCH_SIZE", "16"))
    embedding_batch_max_tokens: int = int(os.getenv("EMBEDDING_BATCH_MAX_TOKENS", "0"))
    embedding_concurrency: int = int(os.getenv("EMBEDDING_CONCURRENCY", "4"))
    embedding_max_attempts: int = int(os.getenv("EMBEDDING_MAX_ATTEMPTS", "4"))
    embedding_backoff_seconds: float = float(os.getenv("EMBEDDING_BACKOFF_SECONDS", "0.5"))
    openai_api_key: str | None = os.getenv("OPENAI_API_KEY")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    openai_embedding_model: str | None = os.getenv("OPENAI_EMBEDDING_MODEL")
    openai_chat_model: str | None = os.getenv("OPENAI_CHAT_MODEL")
    gemini_api_key: str | None = os.getenv("GEMINI_API_KEY")
    gemini_embedding_model: str | None = os.getenv("GEMINI_EMBEDDING_MODEL")
    gemini_chat_model: str | None = os.getenv("GEMINI_CHAT_MODEL")

    vectorstore_backend: str = os.getenv("RAG_VECTORSTORE", "memory")
    hybrid_weight: float = float(os.getenv("RAG_HYBRID_WEIGHT", "0.5"))
    milvus_uri: str = os.getenv("MILVUS_URI", "http://localhost:19530")
    milvus_token: str | None = os.getenv("MILVUS_TOKEN")
    milvus_collection: str = os.getenv("MILVUS_COLLECTION", "ragchat_chunks")
    milvus_image_collection: str = os.getenv("MILVUS_IMAGE_COLLECTION", "ragchat_images")
    milvus_consistency: str = os.getenv("MILVUS_CONSISTENCY", "Strong")
    milvus_index_type: str = os.getenv("MILVUS_INDEX_TYPE", "HNSW")
    milvus_metric_type: str = os.getenv("MILVUS_METRIC_TYPE", "COSINE")
    milvus_nlist: int = int(os.getenv("MILVUS_NLIST", "1024"))
    milvus_nprobe: int = int(os.getenv("MILVUS_NPROBE", "10"))
    milvus_hybrid_search: bool = _flag("MILVUS_HYBRID_SEARCH", "true")
    chroma_path: str | None = os.getenv("CHROMA_PATH")
    chroma_collection: str = os.getenv("CHROMA_COLLECTION", "ragchat_chunks")
    chroma_image_collection: str = os.getenv("CHROMA_IMAGE_COLLECTION", "ragchat_images")

    llm_provider: str = os.getenv("RAG_LLM_PROVIDER", "ollama")
    llm_temperature: float = float(os.getenv("LLM_TEMPERATURE", "0.1"))
    llm_max_tokens: int = int(os.getenv("LLM_MAX_TOKENS", "1024"))
    llm_timeout: float = float(os.getenv("LLM_TIMEOUT", "60"))
    ollama_base_url: str = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "llama3.1")

    retrieval_mode: str = os.getenv("RAG_RETRIEVAL_MODE", "hybrid")
    top_k: int = int(os.getenv("RAG_TOP_K", "3"))
    min_score: float = float(os.getenv("RAG_MIN_SCORE", "0.0"))
    context_max_chars: int = int(os.getenv("RAG_CONTEXT_MAX_CHARS", "12000"))
    history_max_tokens: int = int(os.getenv("RAG_HISTORY_MAX_TOKENS", "0"))
    follow_up_enabled: bool = _flag("RAG_FOLLOW_UP", "false")
    vision_enabled: bool = _flag("RAG_VISION", "false")


settings = Settings()
