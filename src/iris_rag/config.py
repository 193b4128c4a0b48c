from typing import Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./data/iris_rag.db"

    # Chunking (token budget, see chunking.chunker.estimate_tokens)
    chunk_size_tokens: int = Field(default=256, ge=1)
    chunk_overlap_tokens: int = Field(default=0, ge=0)

    # Embedding oracle (OpenAI-compatible endpoint; llama.cpp / Ollama work too)
    embedding_api_base_url: str = "http://127.0.0.1:8080/v1/embeddings"
    embedding_api_key: Optional[SecretStr] = None
    embedding_model: str = "all-MiniLM-L6-v2"
    embedding_timeout: float = 60.0
    embedding_batch_size: int = Field(default=20, ge=1)
    embedding_cache_size: int = Field(default=4096, ge=0)

    # What to do with chunks embedded by a different model version
    reembed_policy: Literal["lazy", "eager"] = "lazy"

    # "hnsw" trades exactness for speed; results may differ from "exact"
    search_backend: Literal["exact", "hnsw"] = "exact"
    hnsw_neighbors: int = Field(default=32, ge=4)
    hnsw_oversample: int = Field(default=4, ge=1)

    default_search_limit: int = Field(default=5, ge=1)
    default_search_threshold: float = 0.0

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="IRIS_RAG_",
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
