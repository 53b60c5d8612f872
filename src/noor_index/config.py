from typing import List, Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Embedding provider selection: "openai" | "huggingface" | "gemini"
    embedding_provider: str = "huggingface"

    openai_api_key: Optional[SecretStr] = None
    openai_embedding_model: str = "text-embedding-3-small"

    huggingface_api_key: Optional[SecretStr] = None
    huggingface_model: str = "BAAI/bge-m3"

    gemini_api_key: Optional[SecretStr] = None
    gemini_embedding_model: str = "embedding-001"

    embedding_timeout: float = 60.0
    embedding_max_retries: int = 4
    embedding_backoff_initial: float = 2.0
    embedding_backoff_max: float = 60.0

    # Shards (one connection string per shard)
    shard_primary_url: Optional[str] = None
    shard_secondary1_url: Optional[str] = None
    shard_secondary2_url: Optional[str] = None

    shard_default_pool_size: int = 10
    shard_primary_pool_size: Optional[int] = None
    shard_secondary1_pool_size: Optional[int] = None
    shard_secondary2_pool_size: Optional[int] = None

    shard_max_size_bytes: Optional[int] = None
    shard_0_max_size_bytes: Optional[int] = None
    shard_1_max_size_bytes: Optional[int] = None
    shard_2_max_size_bytes: Optional[int] = None
    shard_usage_threshold: float = 0.8

    # Shard that is full and receives no new writes
    shard_retired_id: Optional[int] = None

    # Index build
    max_documents_to_index: int = 1000
    embedding_batch_size: int = 50
    embedding_delay_ms: int = 100
    checkpoint_every: int = 500
    mirror_to_shards: bool = False
    corpus_kinds: str = "quran,hadith,tafsir"

    # Index persistence: "file" | "database"
    index_blob_backend: str = "file"
    vector_index_path: str = "data/ann_index.bin"
    vector_meta_path: str = "data/ann_index_meta.json"
    index_blob_shard_id: int = 0

    corpus_data_dir: str = "data/corpus"
    corpus_base_url: Optional[str] = None

    reconcile_interval_seconds: Optional[float] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore"
    )

    def corpus_kind_list(self) -> List[str]:
        return [k.strip() for k in self.corpus_kinds.split(",") if k.strip()]


settings = Settings()
