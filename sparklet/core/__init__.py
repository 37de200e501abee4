"""Core stage abstractions, parameters, errors and the stage registry."""

from .errors import ErrorHandler, PipelineError
from .interfaces import Estimator, Model, PipelineStage, StageKind, Transformer
from .params import Param, ParamMap, Params
from .registry import StageRegistry, stage_registry

__all__ = [
    "ErrorHandler",
    "PipelineError",
    "Estimator",
    "Model",
    "PipelineStage",
    "StageKind",
    "Transformer",
    "Param",
    "ParamMap",
    "Params",
    "StageRegistry",
    "stage_registry",
]
