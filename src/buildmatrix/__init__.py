from .dsl import combination, wf, build_matrix, CombinationBuilder, build
from .errors import ConfigurationError
from .matrix import expand_matrix
from .model import BuildCombination, BuildMatrix, CapabilityRequirement, JobDescriptor
from .runner import run_pipeline, load_workflow
from .step_workflows.shell import sh_step
from .workers import worker, Worker

__all__ = [
    "combination",
    "wf",
    "build_matrix",
    "CombinationBuilder",
    "build",
    "ConfigurationError",
    "expand_matrix",
    "BuildCombination",
    "BuildMatrix",
    "CapabilityRequirement",
    "JobDescriptor",
    "run_pipeline",
    "load_workflow",
    "sh_step",
    "worker",
    "Worker",
]
