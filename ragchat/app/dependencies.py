from __future__ import annotations

from functools import lru_cache

from ragchat.app.settings import settings
from ragchat.rag.embeddings import (
    BatchingEmbedder,
    EmbeddingBackend,
    GeminiEmbedder,
    HashEmbedder,
    OpenAIEmbedder,
)
from ragchat.rag.engine import ChatEngine
from ragchat.rag.errors import EmbeddingConfigError, StoreError
from ragchat.rag.ingestion import IngestionOrchestrator
from ragchat.rag.llm import build_chat_model
from ragchat.rag.retrieval import Retriever
from ragchat.rag.types import RetrievalMode
from ragchat.vectorstore.base import VectorStore
from ragchat.vectorstore.chroma import ChromaVectorStore
from ragchat.vectorstore.inmemory import InMemoryVectorStore
from ragchat.vectorstore.milvus import MilvusConfig, MilvusVectorStore


def build_embedding_backend() -> EmbeddingBackend:
    provider = settings.embedding_provider.lower().strip()
    if provider == "hash":
        return HashEmbedder(dimension=settings.embedding_dimension)
    if provider == "openai":
        return OpenAIEmbedder(
            api_key=settings.openai_api_key or "",
            model=settings.openai_embedding_model or "",
            dimension=settings.embedding_dimension,
            base_url=settings.openai_base_url,
        )
    if provider in {"gemini", "google"}:
        return GeminiEmbedder(
            api_key=settings.gemini_api_key or "",
            model=settings.gemini_embedding_model or "",
            dimension=settings.embedding_dimension,
        )
    raise EmbeddingConfigError(f"Unsupported embedding provider: {provider}")


@lru_cache
def get_embedder() -> BatchingEmbedder:
    return BatchingEmbedder(
        backend=build_embedding_backend(),
        max_batch_size=settings.embedding_batch_size,
        max_batch_tokens=settings.embedding_batch_max_tokens,
        concurrency=settings.embedding_concurrency,
        max_attempts=settings.embedding_max_attempts,
        backoff_seconds=settings.embedding_backoff_seconds,
    )


def build_vectorstore(dimension: int, *, images: bool = False) -> VectorStore:
    backend = settings.vectorstore_backend.lower().strip()
    if backend == "milvus":
        config = MilvusConfig(
            uri=settings.milvus_uri,
            token=settings.milvus_token,
            collection=settings.milvus_image_collection if images else settings.milvus_collection,
            consistency=settings.milvus_consistency,
            index_type=settings.milvus_index_type,
            metric_type=settings.milvus_metric_type,
            nlist=settings.milvus_nlist,
            nprobe=settings.milvus_nprobe,
            hybrid_search=settings.milvus_hybrid_search,
        )
        return MilvusVectorStore(dimension=dimension, config=config)
    if backend == "chroma":
        return ChromaVectorStore(
            dimension=dimension,
            collection_name=settings.chroma_image_collection if images else settings.chroma_collection,
            path=settings.chroma_path,
        )
    if backend == "memory":
        return InMemoryVectorStore(dimension=dimension)
    raise StoreError(f"Unsupported vector store backend: {backend}", stage="connect")


@lru_cache
def get_vectorstore() -> VectorStore:
    return build_vectorstore(get_embedder().dimension)


@lru_cache
def get_image_vectorstore() -> VectorStore:
    return build_vectorstore(get_embedder().dimension, images=True)


@lru_cache
def get_engine() -> ChatEngine:
    model = build_chat_model(
        settings.llm_provider,
        api_key_openai=settings.openai_api_key,
        api_key_gemini=settings.gemini_api_key,
        openai_base_url=settings.openai_base_url,
        openai_model=settings.openai_chat_model,
        gemini_model=settings.gemini_chat_model,
        ollama_base_url=settings.ollama_base_url,
        ollama_model=settings.ollama_model,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        timeout=settings.llm_timeout,
    )
    embedder = get_embedder()
    image_retriever = None
    if settings.vision_enabled:
        image_retriever = Retriever(
            store=get_image_vectorstore(),
            embedder=embedder,
            vector_weight=settings.hybrid_weight,
        )
    return ChatEngine(
        model=model,
        retriever=Retriever(
            store=get_vectorstore(),
            embedder=embedder,
            vector_weight=settings.hybrid_weight,
        ),
        image_retriever=image_retriever,
        default_mode=RetrievalMode.parse(settings.retrieval_mode),
        default_top_k=settings.top_k,
        min_score=settings.min_score,
        context_max_chars=settings.context_max_chars,
        history_max_tokens=settings.history_max_tokens,
    )


@lru_cache
def get_ingestor() -> IngestionOrchestrator:
    return IngestionOrchestrator(
        store=get_vectorstore(),
        embedder=get_embedder(),
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
    )


@lru_cache
def get_image_ingestor() -> IngestionOrchestrator:
    return IngestionOrchestrator(
        store=get_image_vectorstore(),
        embedder=get_embedder(),
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
    )


def reset_caches() -> None:
    for factory in (
        get_embedder,
        get_vectorstore,
        get_image_vectorstore,
        get_engine,
        get_ingestor,
        get_image_ingestor,
    ):
        factory.cache_clear()
