"""Configuration loading from environment variables.

Every MemoriaConfig field can be set with MEMORIA_<FIELD> (for example
MEMORIA_RAG_TIMEOUT=30). API keys also fall back to the provider's usual
variable: GROQ_API_KEY and OPENAI_API_KEY.

Priority: environment variables > defaults. Call load_dotenv() first to
pick up a .env file.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

ENV_PREFIX = "MEMORIA_"
_DEFAULT_MEMORY_DIR = Path.home() / ".memoria"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class MemoriaConfig:
    """Top-level memoria configuration."""

    memory_dir: Path = _DEFAULT_MEMORY_DIR
    log_level: str = "INFO"

    groq_api_key: str | None = None
    gate_model: str = "llama-3.1-8b-instant"
    reformulate_model: str = "llama-3.1-8b-instant"
    rag_model: str = "llama-3.1-70b-versatile"
    writer_model: str = "llama-3.1-70b-versatile"
    input_price_per_mtok: float = 0.59
    output_price_per_mtok: float = 0.79

    gate_enabled: bool = True
    gate_context_exchanges: int = 3
    rag_enabled: bool = True
    rag_timeout: float = 60.0
    rag_concurrency: int = 3
    rag_max_turns: int = 15
    writer_timeout: float = 300.0
    writer_max_turns: int = 25
    recent_exchanges_buffer: int = 20
    recent_exchanges_per_conversation: int = 10

    embedding_api_key: str | None = None
    embedding_base_url: str = "https://api.openai.com/v1"
    embedding_model: str = "text-embedding-3-small"
    embedding_timeout: float = 10.0
    embedding_max_attempts: int = 3
    embedding_backoff: float = 0.5

    urgent_ttl: float = 60.0
    urgent_sweep_interval: float = 30.0

    pre_search_limit: int = 8
    pre_search_candidates: int = 15
    pre_search_min_score: float = 0.55
    pre_search_reformulations: int = 3

    reset_wait_timeout: float = 30.0
    snapshot_keep: int = 10

    @property
    def db_path(self) -> Path:
        return self.memory_dir / "memory.db"

    @property
    def context_path(self) -> Path:
        return self.memory_dir / "memory-context.md"

    @property
    def settings_path(self) -> Path:
        return self.memory_dir / "settings.json"

    @property
    def traces_path(self) -> Path:
        return self.memory_dir / "traces.jsonl"

    @property
    def log_path(self) -> Path:
        return self.memory_dir / "agent.log"

    @property
    def urgent_dir(self) -> Path:
        return self.memory_dir / "urgent"

    @property
    def snapshots_dir(self) -> Path:
        return self.memory_dir / "snapshots"


def _parse(name: str, raw: str, default: object) -> object:
    if isinstance(default, bool):
        value = raw.strip().lower()
        if value in _TRUE:
            return True
        if value in _FALSE:
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, Path):
        return Path(raw).expanduser()
    return raw


def load_config(env: Mapping[str, str] | None = None) -> MemoriaConfig:
    """Build a MemoriaConfig from environment variables.

    Unparseable values keep the default and log a warning.

    Args:
        env: Mapping to read instead of os.environ.
    """
    env = os.environ if env is None else env
    values: dict[str, object] = {}
    for f in fields(MemoriaConfig):
        raw = env.get(ENV_PREFIX + f.name.upper())
        if raw is None or raw == "":
            continue
        try:
            values[f.name] = _parse(f.name, raw, f.default)
        except ValueError as e:
            logger.warning(
                "Invalid %s%s (%s), using default %r",
                ENV_PREFIX,
                f.name.upper(),
                e,
                f.default,
            )

    values.setdefault("groq_api_key", env.get("GROQ_API_KEY") or None)
    values.setdefault("embedding_api_key", env.get("OPENAI_API_KEY") or None)
    return MemoriaConfig(**values)
