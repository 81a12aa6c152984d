from .dsl import job, sh, uses, pipeline, JobBuilder, build
from .loader import load_definition, load_file, dump_definition
from .matrix import expand, expand_all
from .model import Job, JobInstance, PipelineDefinition, Step, Trigger
from .results import JobResult, JobState, RunResult, StepResult
from .runner import run_pipeline
from .trigger import Event, evaluate

__all__ = [
    "job", "sh", "uses", "pipeline", "JobBuilder", "build",
    "load_definition", "load_file", "dump_definition",
    "expand", "expand_all",
    "Job", "JobInstance", "PipelineDefinition", "Step", "Trigger",
    "JobResult", "JobState", "RunResult", "StepResult",
    "run_pipeline", "Event", "evaluate",
]
