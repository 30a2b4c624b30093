from .dsl import axis, dispatch_input, environment, job, pipeline, probe, rule, sh, uses, wf
from .scheduler import compile, run
from .context import RunContext
from .model import Environment, Job, Pipeline, Step

__all__ = [
    "axis",
    "dispatch_input",
    "environment",
    "job",
    "pipeline",
    "probe",
    "rule",
    "sh",
    "uses",
    "wf",
    "compile",
    "run",
    "RunContext",
    "Environment",
    "Job",
    "Pipeline",
    "Step",
]
