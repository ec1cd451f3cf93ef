from orchestrator.src.services.dag_builder import StageGraph, build
from orchestrator.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    parse_pipeline_file,
)
from orchestrator.src.services.scheduler import CancellationToken, Scheduler
from orchestrator.src.services.state_store import RunStateStore

__all__ = [
    "StageGraph",
    "build",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "parse_pipeline_file",
    "CancellationToken",
    "Scheduler",
    "RunStateStore",
]
