"""Memoria: long-term memory for conversational assistants."""

from .config import MemoriaConfig, load_config
from .errors import MemoriaError
from .memory import Entry, EntryStore, Exchange, InjectionLimits
from .pipeline import MemoryPipeline, ProcessingStatus

__version__ = "0.1.0"

__all__ = [
    "Entry",
    "EntryStore",
    "Exchange",
    "InjectionLimits",
    "MemoriaConfig",
    "MemoryPipeline",
    "MemoriaError",
    "ProcessingStatus",
    "load_config",
]
