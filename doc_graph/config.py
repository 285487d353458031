"""Configuration for the document knowledge-graph system.

Loads from environment variables with sensible defaults.
Optionally reads a config.json file.

Note:
    Environment variables use the ``DOC_GRAPH_*`` prefix.
    The confidence values are policy defaults, not correctness requirements;
    every extractor accepts overrides at construction time.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


_FUSION_STRATEGIES = ("exact_match", "fuzzy_match", "semantic_match")


@dataclass
class Config:
    """Central configuration for all sub-systems."""

    # Storage
    db_path: str = ""  # resolved in load_config()

    # Remote LLM (chat-completion shaped endpoint)
    llm_api_key: str = ""
    llm_endpoint: str = ""
    llm_model: str = "gpt-3.5-turbo"
    llm_temperature: float = 0.0
    llm_timeout: float = 30.0
    llm_max_retries: int = 3

    # Embeddings (optional vector capability + semantic fusion)
    embedding_api_key: str = ""
    embedding_model: str = "qwen/qwen3-embedding-8b"
    embedding_dimensions: int = 1024
    embedding_base_url: str = "https://openrouter.ai/api/v1"

    # Tokenizer
    use_segmenter: bool = True

    # Extraction confidences
    rule_entity_confidence: float = 0.7
    dict_entity_confidence: float = 0.8
    llm_entity_confidence: float = 0.9
    rule_relation_confidence: float = 0.8
    cooccur_confidence: float = 0.5
    llm_relation_confidence: float = 0.9
    context_window: int = 10

    # Fusion
    fusion_strategy: str = "fuzzy_match"
    fusion_threshold: float = 0.8
    fusion_consider_type: bool = True
    fusion_consider_context: bool = False
    auto_fuse: bool = False

    # API
    # Security: bind to localhost by default. Override with DOC_GRAPH_HOST if needed.
    api_host: str = "127.0.0.1"
    api_port: int = 8788
    api_key: str = ""

    @property
    def llm_enabled(self) -> bool:
        return bool(self.llm_endpoint)

    @property
    def embeddings_enabled(self) -> bool:
        return bool(self.embedding_api_key)

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty == OK)."""
        errors: list[str] = []
        if self.fusion_strategy not in _FUSION_STRATEGIES:
            errors.append(
                f"DOC_GRAPH_FUSION_STRATEGY must be one of {', '.join(_FUSION_STRATEGIES)}"
            )
        if not 0.0 <= self.fusion_threshold <= 1.0:
            errors.append("DOC_GRAPH_FUSION_THRESHOLD must be within [0, 1]")
        for name in (
            "rule_entity_confidence",
            "dict_entity_confidence",
            "llm_entity_confidence",
            "rule_relation_confidence",
            "cooccur_confidence",
            "llm_relation_confidence",
        ):
            if not 0.0 <= getattr(self, name) <= 1.0:
                errors.append(f"{name} must be within [0, 1]")
        if self.context_window < 0:
            errors.append("DOC_GRAPH_CONTEXT_WINDOW must be >= 0")
        if self.embedding_dimensions < 1:
            errors.append("DOC_GRAPH_EMBEDDING_DIMENSIONS must be >= 1")
        if self.llm_timeout <= 0:
            errors.append("DOC_GRAPH_LLM_TIMEOUT must be > 0")
        if self.api_port < 1 or self.api_port > 65535:
            errors.append("DOC_GRAPH_PORT must be 1-65535")
        return errors


def _to_bool(val: str) -> bool:
    return str(val).strip().lower() in ("1", "true", "yes", "on")


def load_config(config_path: Optional[str] = None) -> Config:
    """Build a Config from environment variables, optionally overlaid with a JSON file.

    Environment variables (all optional):
        DOC_GRAPH_CONFIG
        DOC_GRAPH_DB
        DOC_GRAPH_LLM_API_KEY / DOC_GRAPH_LLM_ENDPOINT / DOC_GRAPH_LLM_MODEL
        DOC_GRAPH_EMBEDDING_API_KEY / DOC_GRAPH_EMBEDDING_MODEL
        DOC_GRAPH_FUSION_STRATEGY / DOC_GRAPH_FUSION_THRESHOLD
        DOC_GRAPH_HOST / DOC_GRAPH_PORT / DOC_GRAPH_API_KEY
    """
    cfg = Config()

    # --- JSON file overlay ------------------------------------------------
    json_path = config_path or os.environ.get("DOC_GRAPH_CONFIG")
    if json_path and Path(json_path).is_file():
        with open(json_path, "r") as fh:
            data = json.load(fh)
        for key, val in data.items():
            if hasattr(cfg, key):
                expected_type = type(getattr(cfg, key))
                try:
                    if expected_type is bool and isinstance(val, str):
                        setattr(cfg, key, _to_bool(val))
                    else:
                        setattr(cfg, key, expected_type(val))
                except (ValueError, TypeError):
                    pass  # skip bad values

    # --- Environment variable overlay -------------------------------------
    env_map: dict[str, tuple[str, type]] = {
        "DOC_GRAPH_DB": ("db_path", str),
        "DOC_GRAPH_LLM_API_KEY": ("llm_api_key", str),
        "DOC_GRAPH_LLM_ENDPOINT": ("llm_endpoint", str),
        "DOC_GRAPH_LLM_MODEL": ("llm_model", str),
        "DOC_GRAPH_LLM_TEMPERATURE": ("llm_temperature", float),
        "DOC_GRAPH_LLM_TIMEOUT": ("llm_timeout", float),
        "DOC_GRAPH_LLM_MAX_RETRIES": ("llm_max_retries", int),
        "DOC_GRAPH_EMBEDDING_API_KEY": ("embedding_api_key", str),
        "DOC_GRAPH_EMBEDDING_MODEL": ("embedding_model", str),
        "DOC_GRAPH_EMBEDDING_DIMENSIONS": ("embedding_dimensions", int),
        "DOC_GRAPH_EMBEDDING_BASE_URL": ("embedding_base_url", str),
        "DOC_GRAPH_USE_SEGMENTER": ("use_segmenter", _to_bool),
        "DOC_GRAPH_CONTEXT_WINDOW": ("context_window", int),
        "DOC_GRAPH_FUSION_STRATEGY": ("fusion_strategy", str),
        "DOC_GRAPH_FUSION_THRESHOLD": ("fusion_threshold", float),
        "DOC_GRAPH_FUSION_CONSIDER_TYPE": ("fusion_consider_type", _to_bool),
        "DOC_GRAPH_FUSION_CONSIDER_CONTEXT": ("fusion_consider_context", _to_bool),
        "DOC_GRAPH_AUTO_FUSE": ("auto_fuse", _to_bool),
        "DOC_GRAPH_HOST": ("api_host", str),
        "DOC_GRAPH_PORT": ("api_port", int),
        "DOC_GRAPH_API_KEY": ("api_key", str),
    }

    for env_key, (attr, cast) in env_map.items():
        val = os.environ.get(env_key)
        if val is not None:
            try:
                setattr(cfg, attr, cast(val))
            except (ValueError, TypeError):
                pass

    # --- Default db_path resolution ---------------------------------------
    if not cfg.db_path:
        cfg.db_path = str(Path.home() / ".doc-graph" / "graph.sqlite")

    return cfg
