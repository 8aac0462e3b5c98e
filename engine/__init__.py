from .config import RuntimeConfig, build_runtime_config, load_config, validate_config
from .job_store import JobRecord, MemoryJobStore, SqliteJobStore
from .jobs import JobService, build_job_service
from .paths import EnginePaths
from .pipeline import StrategyPipeline
from .runtime import get_runtime_info

__all__ = [
    "EnginePaths",
    "JobRecord",
    "JobService",
    "MemoryJobStore",
    "RuntimeConfig",
    "SqliteJobStore",
    "StrategyPipeline",
    "build_job_service",
    "build_runtime_config",
    "get_runtime_info",
    "load_config",
    "validate_config",
]
