"""Stage registry mapping type tags to stage classes."""

from typing import Any, Dict, Type
import logging

from .errors import ParameterError
from .interfaces import PipelineStage


class StageRegistry:
    """Registry of pipeline stage classes, used by persistence and config-built pipelines."""

    def __init__(self):
        self._stages: Dict[str, Type[PipelineStage]] = {}
        self.logger = logging.getLogger(self.__class__.__name__)

    def register_stage(self, type_tag: str, stage_class: Type[PipelineStage]) -> None:
        """Register a stage class under a type tag."""
        if not isinstance(stage_class, type) or not issubclass(stage_class, PipelineStage):
            raise ValueError(f"Stage {stage_class} must inherit from PipelineStage")

        existing = self._stages.get(type_tag)
        if existing is not None and existing is not stage_class:
            raise ValueError(f"Type tag '{type_tag}' is already registered to {existing.__name__}")

        self._stages[type_tag] = stage_class
        self.logger.debug(f"Registered stage: {type_tag}")

    def get_stage_class(self, type_tag: str) -> Type[PipelineStage]:
        """Get a stage class by type tag; raises KeyError for unknown tags."""
        if type_tag not in self._stages:
            raise KeyError(type_tag)
        return self._stages[type_tag]

    def is_registered(self, type_tag: str) -> bool:
        return type_tag in self._stages

    def create_stage(self, type_tag: str, **params: Any) -> PipelineStage:
        """Create a stage instance from a type tag and parameter values."""
        try:
            stage_class = self.get_stage_class(type_tag)
        except KeyError:
            raise ParameterError(f"Unknown stage type '{type_tag}'. "
                                 f"Registered types: {sorted(self._stages)}", {"type": type_tag})

        stage = stage_class(**params)
        self.logger.info(f"Created stage {stage.uid} ({type_tag})")
        return stage

    def list_stages(self) -> Dict[str, Type[PipelineStage]]:
        """List all registered stage classes."""
        return self._stages.copy()

    def unregister_stage(self, type_tag: str) -> bool:
        """Unregister a stage class."""
        if type_tag in self._stages:
            del self._stages[type_tag]
            self.logger.debug(f"Unregistered stage: {type_tag}")
            return True
        return False


# Global stage registry instance
stage_registry = StageRegistry()
