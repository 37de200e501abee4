"""Core interfaces and abstract base classes for pipeline stages and execution backends."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Dict, Optional
import logging

from .params import ParamMap, Params

if TYPE_CHECKING:
    from ..distributed.dataset import Dataset
    from ..distributed.schema import Schema


class StageKind(Enum):
    """Kinds of pipeline stages."""
    ESTIMATOR = "estimator"
    TRANSFORMER = "transformer"


class ExecutionBackend(ABC):
    """Abstract base class for the worker pools that run partition tasks."""

    name: ClassVar[str] = "backend"

    @abstractmethod
    def initialize(self) -> None:
        """Start the worker pool."""
        pass

    @abstractmethod
    def shutdown(self) -> None:
        """Stop the worker pool."""
        pass

    @abstractmethod
    def submit(self, func: Callable, *args, **kwargs) -> Any:
        """Run ``func`` on a worker; returns a future with result(), cancel() and done()."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Whether tasks can currently be submitted."""
        pass

    @property
    @abstractmethod
    def max_workers(self) -> int:
        """Number of tasks that may run concurrently."""
        pass

    def get_cluster_info(self) -> Dict[str, Any]:
        return {"backend": self.name, "max_workers": self.max_workers}


class PipelineStage(Params, ABC):
    """
    A single stage of a pipeline: either an Estimator or a Transformer.

    ``kind`` is explicit on every stage so code that walks a pipeline never
    has to check for methods to tell the two apart.
    """

    kind: ClassVar[StageKind]
    type_tag: ClassVar[str] = ""

    def __init__(self, uid: Optional[str] = None, **kwargs):
        super().__init__(uid=uid, **kwargs)
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def transform_schema(self, schema: "Schema") -> "Schema":
        """Validate input columns and return the output schema; raises SchemaError."""
        pass

    @property
    def is_estimator(self) -> bool:
        return self.kind == StageKind.ESTIMATOR


class Transformer(PipelineStage):
    """Maps a dataset to a new dataset."""

    kind = StageKind.TRANSFORMER

    def transform(self, dataset: "Dataset", params: Optional[ParamMap] = None) -> "Dataset":
        """Lazily apply this stage; the input dataset is never modified."""
        stage = self.copy(params) if params else self
        stage.transform_schema(dataset.schema)
        return stage._transform(dataset)

    @abstractmethod
    def _transform(self, dataset: "Dataset") -> "Dataset":
        pass


class Model(Transformer):
    """A Transformer produced by fitting an Estimator."""

    def __init__(self, uid: Optional[str] = None, parent_uid: Optional[str] = None, **kwargs):
        super().__init__(uid=uid, **kwargs)
        self.parent_uid = parent_uid

    @abstractmethod
    def state(self) -> Dict[str, Any]:
        """Learned numeric state: name to scalar, vector or list of labels."""
        pass

    @classmethod
    @abstractmethod
    def from_state(cls, uid: str, params: Dict[str, Any], state: Dict[str, Any]) -> "Model":
        """Rebuild a fitted model from persisted params and state."""
        pass


class Estimator(PipelineStage):
    """Learns a Model from a dataset."""

    kind = StageKind.ESTIMATOR

    def fit(self, dataset: "Dataset", params: Optional[ParamMap] = None) -> Model:
        estimator = self.copy(params) if params else self
        estimator.transform_schema(dataset.schema)
        estimator.logger.debug(f"Fitting {estimator.uid}")
        return estimator._fit(dataset)

    def fit_transform(self, dataset: "Dataset", params: Optional[ParamMap] = None) -> "Dataset":
        """Fit on ``dataset`` and transform the same dataset with the resulting model."""
        return self.fit(dataset, params).transform(dataset)

    @abstractmethod
    def _fit(self, dataset: "Dataset") -> Model:
        pass
