from __future__ import annotations
from pydantic_settings import BaseSettings
from pathlib import Path
from typing import List


class Settings(BaseSettings):
    # Where raw data lives (batch ingestion script)
    data_dir: Path = Path("data/raw")

    # Comma-separated credential list shared by every key rotation pool
    api_keys: str = ""

    # Ollama configuration
    ollama_base_url: str = "http://localhost:11434"
    ollama_chat_model: str = "llama3"
    ollama_extraction_model: str = "llama3"
    ollama_embedding_model: str = "nomic-embed-text"
    answer_temperature: float = 0.7
    extraction_temperature: float = 0.0

    # Storage
    graph_store_path: Path = Path("graph_store.json")
    chroma_db_dir: Path = Path("chroma_db")
    chroma_collection: str = "docgraph_chunks"

    # Chunking
    chunk_size: int = 1500
    chunk_overlap: int = 400
    min_page_chars: int = 10

    # Batching
    embedding_batch_size: int = 30
    extraction_batch_size: int = 5
    extraction_batch_delay: float = 1.0

    # Embedding task queue
    retry_base_delay: float = 2.0
    retry_backoff_multiplier: float = 1.5
    retry_short_cap: float = 30.0
    retry_short_attempts: int = 10
    retry_long_delay: float = 300.0
    retry_max_attempts: int = 100  # 0 disables the ceiling
    retry_warn_after: int = 20

    # Retrieval
    vector_top_k: int = 20
    fulltext_top_k: int = 10

    # Optional reranking service
    rerank_enabled: bool = False
    rerank_url: str = "https://api.jina.ai/v1/rerank"
    rerank_api_key: str = ""
    rerank_model: str = "jina-reranker-v2-base-multilingual"
    rerank_top_n: int = 10
    rerank_timeout: float = 30.0

    # Upload
    max_upload_bytes: int = 100 * 1024 * 1024

    # Logging
    log_level: str = "INFO"
    logger_name: str = "docgraph"

    @property
    def api_key_list(self) -> List[str]:
        return [k.strip() for k in self.api_keys.split(",") if k.strip()]

    class Config:
        env_file = ".env"


settings = Settings()
