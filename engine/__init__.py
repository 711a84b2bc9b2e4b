from .errors import ConversionError
from .job_store import InMemoryJobStore, Job
from .paths import EnginePaths
from .pipeline import ConversionPipeline, PipelineState, ToolCommands
from .runtime import get_runtime_info

__all__ = [
    "ConversionError",
    "ConversionPipeline",
    "EnginePaths",
    "InMemoryJobStore",
    "Job",
    "PipelineState",
    "ToolCommands",
    "get_runtime_info",
]
