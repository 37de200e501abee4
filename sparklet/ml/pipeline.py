"""Pipelines: ordered sequences of stages fitted as a single estimator."""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.errors import ParameterError, PersistenceError
from ..core.interfaces import Estimator, Model, PipelineStage, StageKind, Transformer
from ..core.params import ParamMap
from ..core.registry import stage_registry
from ..distributed.dataset import Dataset
from ..distributed.schema import Schema


def _check_stages(stages: Iterable[Any], owner: str, transformers_only: bool = False) -> Tuple[PipelineStage, ...]:
    stages = tuple(stages)
    seen = set()
    for position, stage in enumerate(stages):
        if not isinstance(stage, PipelineStage):
            raise ParameterError(f"{owner}: stage {position} is not a pipeline stage: {stage!r}")
        if transformers_only and stage.kind != StageKind.TRANSFORMER:
            raise ParameterError(f"{owner}: stage {position} ({stage.uid}) is not a transformer")
        if stage.uid in seen:
            raise ParameterError(f"{owner}: stage uid {stage.uid} appears more than once")
        seen.add(stage.uid)
    return stages


class Pipeline(Estimator):
    """
    An estimator made of ordered stages.

    Fitting first validates the schema across every stage, so a missing or
    mistyped column fails before any computation. Stages are then fitted or
    applied in order; the dataset is only transformed by stages whose output
    a later estimator needs.
    """

    type_tag = "pipeline"
    uid_prefix = "pipeline"

    def __init__(self, stages: Sequence[PipelineStage] = (), uid: Optional[str] = None):
        super().__init__(uid=uid)
        self._stages = _check_stages(stages, self.uid)

    @property
    def stages(self) -> Tuple[PipelineStage, ...]:
        return self._stages

    def append(self, stage: PipelineStage) -> "Pipeline":
        """Return a new pipeline with ``stage`` added at the end."""
        return Pipeline(self._stages + (stage,))

    def copy(self, extra: Optional[ParamMap] = None) -> "Pipeline":
        clone = super().copy(extra)
        clone._stages = tuple(stage.copy(extra) for stage in self._stages)
        return clone

    def transform_schema(self, schema: Schema) -> Schema:
        for stage in self._stages:
            schema = stage.transform_schema(schema)
        return schema

    def _fit(self, dataset: Dataset) -> "PipelineModel":
        last_estimator = max((i for i, s in enumerate(self._stages) if s.kind == StageKind.ESTIMATOR), default=-1)

        fitted: List[Transformer] = []
        current = dataset
        for position, stage in enumerate(self._stages):
            if stage.kind == StageKind.ESTIMATOR:
                self.logger.info(f"Fitting stage {position} ({stage.uid})")
                transformer = stage.fit(current)
            else:
                transformer = stage
            fitted.append(transformer)
            if position < last_estimator:
                current = transformer.transform(current)

        return PipelineModel(fitted, uid=self.uid, parent_uid=self.uid)

    @classmethod
    def from_config(cls, stage_specs: Sequence[Dict[str, Any]], uid: Optional[str] = None) -> "Pipeline":
        """
        Build a pipeline from ``[{"type": "string_indexer", "params": {...}}, ...]``.
        """
        stages = []
        for position, spec in enumerate(stage_specs):
            if not isinstance(spec, dict) or "type" not in spec:
                raise ParameterError(f"Stage specification {position} must be a mapping with a 'type' key")
            stages.append(stage_registry.create_stage(spec["type"], **(spec.get("params") or {})))
        return cls(stages, uid=uid)

    def __repr__(self) -> str:
        return f"Pipeline(uid={self.uid}, stages={[s.uid for s in self._stages]})"


class PipelineModel(Model):
    """Fitted pipeline: an immutable sequence of transformers applied in order."""

    type_tag = "pipeline_model"
    uid_prefix = "pipeline"

    def __init__(self, stages: Sequence[Transformer], uid: Optional[str] = None,
                 parent_uid: Optional[str] = None):
        super().__init__(uid=uid, parent_uid=parent_uid)
        self._stages = _check_stages(stages, self.uid, transformers_only=True)

    @property
    def stages(self) -> Tuple[Transformer, ...]:
        return self._stages

    def copy(self, extra: Optional[ParamMap] = None) -> "PipelineModel":
        clone = super().copy(extra)
        clone._stages = tuple(stage.copy(extra) for stage in self._stages)
        return clone

    def transform_schema(self, schema: Schema) -> Schema:
        for stage in self._stages:
            schema = stage.transform_schema(schema)
        return schema

    def _transform(self, dataset: Dataset) -> Dataset:
        for stage in self._stages:
            dataset = stage.transform(dataset)
        return dataset

    def state(self) -> Dict[str, Any]:
        return {}

    @classmethod
    def from_state(cls, uid: str, params: Dict[str, Any], state: Dict[str, Any]) -> "PipelineModel":
        raise PersistenceError("Pipeline models are restored with sparklet.ml.persistence.load")

    def __repr__(self) -> str:
        return f"PipelineModel(uid={self.uid}, stages={[s.uid for s in self._stages]})"


stage_registry.register_stage(Pipeline.type_tag, Pipeline)
stage_registry.register_stage(PipelineModel.type_tag, PipelineModel)
