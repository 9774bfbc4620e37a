from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


DEFAULT_IGNORE_PATTERNS: List[str] = [
    "**/.git/**",
    "**/node_modules/**",
    "**/__pycache__/**",
    "**/.venv/**",
    "**/venv/**",
    "**/dist/**",
    "**/build/**",
    "**/lib/**",
    "**/*.min.js",
    "**/.DS_Store",
]

VECTOR_BACKEND_CHOICES = ("auto", "sqlite_vec", "faiss", "computed")
EMBEDDING_BACKEND_CHOICES = ("none", "sentence_transformers", "ollama", "openai")


@dataclass
class CodememConfig:
    # Storage
    db_path: str = "codemem.db"
    index_dir: str = "."  # FAISS index files and bundled extensions live here

    # Security
    allowed_roots: List[str] = field(default_factory=list)

    # Extraction / chunking
    ignore_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    max_file_size_mb: int = 20
    max_parse_lines: int = 20_000
    max_parse_bytes: int = 2_000_000
    fallback_window_lines: int = 200
    heuristic_fallback: bool = True
    include_imports: bool = False
    prefix_docstrings: bool = True
    tokenizer_path: str = ""

    # Search
    top_k: int = 20
    alpha: float = 0.6
    candidate_multiplier: int = 8
    lexical_body_chars: int = 2000

    # Vector backend selection
    vector_backend: str = "auto"  # "auto" | "sqlite_vec" | "faiss" | "computed"
    extension_dirs: List[str] = field(default_factory=list)
    self_test_dimension: int = 8

    # Embedding backend selection
    embedding_backend: str = "none"  # "none" | "sentence_transformers" | "ollama" | "openai"
    embedding_batch_size: int = 64
    model_name: str = "all-MiniLM-L6-v2"
    device: str = "cpu"
    ollama_model: str = "nomic-embed-text"
    ollama_url: str = "http://localhost:11434"
    openai_api_key: str = ""
    openai_api_base: str = "https://api.openai.com/v1"
    openai_embedding_model: str = "text-embedding-3-small"


class AllowedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    db_path: str = "codemem.db"
    index_dir: str = "."

    allowed_roots: List[str] = []

    ignore_patterns: List[str] = list(DEFAULT_IGNORE_PATTERNS)
    max_file_size_mb: int = 20
    max_parse_lines: int = 20_000
    max_parse_bytes: int = 2_000_000
    fallback_window_lines: int = 200
    heuristic_fallback: bool = True
    include_imports: bool = False
    prefix_docstrings: bool = True
    tokenizer_path: str = ""

    top_k: int = 20
    alpha: float = 0.6
    candidate_multiplier: int = 8
    lexical_body_chars: int = 2000

    vector_backend: str = "auto"
    extension_dirs: List[str] = []
    self_test_dimension: int = 8

    embedding_backend: str = "none"
    embedding_batch_size: int = 64
    model_name: str = "all-MiniLM-L6-v2"
    device: str = "cpu"
    ollama_model: str = "nomic-embed-text"
    ollama_url: str = "http://localhost:11434"
    openai_api_key: str = ""
    openai_api_base: str = "https://api.openai.com/v1"
    openai_embedding_model: str = "text-embedding-3-small"

    @field_validator("alpha")
    @classmethod
    def validate_alpha(cls, value: float) -> float:
        if not 0.0 <= float(value) <= 1.0:
            raise ValueError("alpha must be within [0, 1]")
        return value

    @field_validator(
        "top_k",
        "candidate_multiplier",
        "fallback_window_lines",
        "max_parse_lines",
        "max_file_size_mb",
        "self_test_dimension",
        "embedding_batch_size",
    )
    @classmethod
    def validate_positive(cls, value: int, info):  # type: ignore[override]
        if int(value) <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("vector_backend")
    @classmethod
    def validate_vector_backend(cls, value: str) -> str:
        value = str(value).lower()
        if value not in VECTOR_BACKEND_CHOICES:
            raise ValueError(f"vector_backend must be one of {', '.join(VECTOR_BACKEND_CHOICES)}")
        return value

    @field_validator("embedding_backend")
    @classmethod
    def validate_embedding_backend(cls, value: str) -> str:
        value = str(value).lower()
        if value not in EMBEDDING_BACKEND_CHOICES:
            raise ValueError(
                f"embedding_backend must be one of {', '.join(EMBEDDING_BACKEND_CHOICES)}"
            )
        return value


def default_config_path() -> str:
    env_path = os.environ.get("CODEMEM_CONFIG_PATH")
    if env_path:
        return env_path
    return os.path.join(os.path.expanduser("~"), ".config", "codemem", "codemem.yaml")


def load_config(path: Optional[str] = None) -> CodememConfig:
    """Load config from YAML.

    Default path: $CODEMEM_CONFIG_PATH, else ~/.config/codemem/codemem.yaml

    Example:

        db_path: .codemem/index.db
        index_dir: .codemem
        vector_backend: auto
        embedding_backend: ollama
        alpha: 0.6
    """

    if path is None:
        path = default_config_path()

    if not os.path.exists(path):
        return CodememConfig()
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("Invalid configuration: top-level YAML value must be a mapping")

    if isinstance(data.get("ignore_patterns"), list):
        ignore_patterns = list(data["ignore_patterns"])
        data["ignore_patterns"] = ignore_patterns + [
            p for p in DEFAULT_IGNORE_PATTERNS if p not in ignore_patterns
        ]

    try:
        validated = AllowedConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc

    cfg = CodememConfig(**validated.model_dump())

    cfg.allowed_roots = [os.path.realpath(p) for p in (cfg.allowed_roots or [])]
    cfg.index_dir = os.path.abspath(cfg.index_dir)
    cfg.db_path = os.path.abspath(cfg.db_path)
    if cfg.max_parse_bytes > cfg.max_file_size_mb * 1024 * 1024:
        logging.warning(
            "max_parse_bytes (%s) exceeds max_file_size_mb (%s); files that large are never read.",
            cfg.max_parse_bytes,
            cfg.max_file_size_mb,
        )

    return cfg
