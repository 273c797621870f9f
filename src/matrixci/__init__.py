from .dsl import axis, best_effort, build, dimension, pipe, sh, PipelineBuilder
from .errors import ConfigError, ReportError, StepFailure
from .loader import dump_pipeline, load_pipeline, parse_pipeline
from .matrix import expand, expand_pipeline
from .model import Command, Dimension, JobConfig, Pipeline, Step, Variant
from .orchestrator import Orchestrator, run_pipeline
from .report import Report, ResultAggregator, read_junit

__all__ = [
    "axis", "best_effort", "build", "dimension", "pipe", "sh", "PipelineBuilder",
    "ConfigError", "ReportError", "StepFailure",
    "dump_pipeline", "load_pipeline", "parse_pipeline",
    "expand", "expand_pipeline",
    "Command", "Dimension", "JobConfig", "Pipeline", "Step", "Variant",
    "Orchestrator", "run_pipeline",
    "Report", "ResultAggregator", "read_junit",
]
