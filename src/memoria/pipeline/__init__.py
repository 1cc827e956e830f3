"""Exchange processing: gate, retrieval, urgent injection and the writer."""

from .core import MemoryPipeline, PipelineState, ProcessingStatus
from .gate import Gate, GateDecision
from .presearch import PreSearch
from .rag import RagAgent, RagResult, parse_rag_output
from .sequencer import OrderedRelease
from .urgent import UrgentContextInjector
from .writer import ContextAgent, WriterResult

__all__ = [
    "ContextAgent",
    "Gate",
    "GateDecision",
    "MemoryPipeline",
    "OrderedRelease",
    "PipelineState",
    "PreSearch",
    "ProcessingStatus",
    "RagAgent",
    "RagResult",
    "UrgentContextInjector",
    "WriterResult",
    "parse_rag_output",
]
