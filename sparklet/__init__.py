"""
sparklet - ML pipelines on a lazily evaluated, partitioned dataset engine.
"""

__version__ = "0.1.0"

from .core.session import Session
from .config import ConfigManager, SessionConfig
from .ml import Pipeline, PipelineModel, ParamGridBuilder, CrossValidator, load, save

__all__ = [
    "Session",
    "ConfigManager",
    "SessionConfig",
    "Pipeline",
    "PipelineModel",
    "ParamGridBuilder",
    "CrossValidator",
    "load",
    "save",
]
