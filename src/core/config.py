"""
Application configuration.

Settings come from a YAML file (``config.yaml`` by default, or the path in
``CONFIG_PATH``) with secrets optionally supplied through ``.env``.  A relative
path is searched for in the working directory and up to five parents, then
beside the project root.

Usage
-----
    from src.core.config import load_config

    cfg = load_config()
    cfg.storage.type          # "memory" | "sqlite" | "redis"
    cfg.model_timeout()       # timedelta
"""
from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from src.utils.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_CONFIG = "config.yaml"
_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_MAX_SEARCH_DEPTH = 5


class ServerConfig(BaseModel):
    address: str = ":8080"
    mode: str = "release"  # debug | release

    @field_validator("address", "mode", mode="before")
    @classmethod
    def _blank_is_default(cls, value, info):
        return value or cls.model_fields[info.field_name].default

    def host_port(self) -> tuple[str, int]:
        """Split ``address`` into (host, port); an empty host binds all interfaces."""
        host, _, port = self.address.rpartition(":")
        return host or "0.0.0.0", int(port)


class ModelConfig(BaseModel):
    provider: str = "ollama"
    base_url: str = "http://localhost:11434"
    api_key: str = ""
    model: str = "qwen2.5:7b"
    timeout: int = 60  # seconds

    @field_validator("timeout", mode="before")
    @classmethod
    def _zero_timeout_is_default(cls, value):
        return value or 60


class AgentConfig(BaseModel):
    max_retries: int = 3
    timeout: int = 30  # seconds
    max_tokens: int = 0
    temperature: float = 0.7
    max_history: int = 20
    enable_stream: bool = True
    rate_limit: int = 0    # chat turns per chatbot per window; 0 disables
    rate_window: int = 60  # seconds

    @field_validator("max_retries", "timeout", "max_history", "rate_window", mode="before")
    @classmethod
    def _zero_is_default(cls, value, info):
        return value or cls.model_fields[info.field_name].default

    def rate_window_delta(self) -> timedelta:
        return timedelta(seconds=self.rate_window)


class SQLiteConfig(BaseModel):
    path: str = "data/chatbots.db"


class RedisConfig(BaseModel):
    host: str = "localhost"
    port: int = 6379
    password: str = ""
    db: int = 0


class MilvusConfig(BaseModel):
    host: str = "localhost"
    port: int = 19530


class StorageConfig(BaseModel):
    type: str = "memory"  # memory | sqlite | redis
    sqlite: SQLiteConfig = Field(default_factory=SQLiteConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    milvus: MilvusConfig = Field(default_factory=MilvusConfig)


class RAGConfig(BaseModel):
    enabled: bool = False
    ollama_url: str = "http://localhost:11434"
    embedding_model: str = "nomic-embed-text"
    collection: str = "knowledge_base"
    dimension: int = 768


class Config(BaseModel):
    """Root configuration object."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    rag: RAGConfig = Field(default_factory=RAGConfig)

    def model_timeout(self) -> timedelta:
        return timedelta(seconds=self.model.timeout)

    def agent_timeout(self) -> timedelta:
        return timedelta(seconds=self.agent.timeout)


def resolve_config_path(path: Union[str, Path]) -> Optional[Path]:
    """
    Locate *path* on disk.

    Absolute paths are returned as-is when they exist.  Relative paths are
    tried against the working directory and its parents, then against the
    project root.  Returns ``None`` when nothing is found.
    """
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate if candidate.exists() else None

    current = Path.cwd()
    for _ in range(_MAX_SEARCH_DEPTH):
        test_path = current / candidate
        if test_path.exists():
            return test_path
        if current.parent == current:
            break
        current = current.parent

    test_path = _PROJECT_ROOT / candidate
    if test_path.exists():
        return test_path
    return None


def load_config(path: Union[str, Path, None] = None) -> Config:
    """
    Load configuration from YAML, falling back to defaults when no file exists.

    Parameters
    ----------
    path : str | Path | None
        Explicit config path.  Defaults to ``$CONFIG_PATH`` or ``config.yaml``.

    Raises
    ------
    ValueError
        If the file exists but is not valid YAML.
    """
    load_dotenv()

    requested = path or os.getenv("CONFIG_PATH") or _DEFAULT_CONFIG
    resolved = resolve_config_path(requested)

    raw: dict = {}
    if resolved is None:
        logger.info("Config file %s not found; using defaults", requested)
    else:
        try:
            with open(resolved, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"parse config file {resolved}: {exc}") from exc
        logger.info("Loaded config from %s", resolved)

    cfg = Config.model_validate(raw)

    api_key = os.getenv("MODEL_API_KEY", "").strip()
    if api_key:
        cfg.model.api_key = api_key

    return cfg
