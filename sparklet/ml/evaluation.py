"""Evaluators: score a transformed dataset with a single metric."""

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Literal, Optional

import numpy as np
import pandas as pd
from sklearn.metrics import (
    accuracy_score, auc, f1_score, mean_absolute_error, mean_squared_error,
    precision_recall_curve, precision_score, r2_score, recall_score, roc_auc_score
)

from ..core.errors import InvalidDataError
from ..core.params import ColumnName, ParamMap, Param, Params
from ..distributed.dataset import Dataset
from .feature import column_matrix
from .shared import HasLabelCol, HasPredictionCol


class Evaluator(Params, ABC):
    """Base class for evaluators; ``evaluator(dataset)`` is ``evaluator.evaluate(dataset)``."""

    uid_prefix = "evaluator"

    def __init__(self, uid: Optional[str] = None, **kwargs):
        super().__init__(uid=uid, **kwargs)
        self.logger = logging.getLogger(self.__class__.__name__)

    def evaluate(self, dataset: Dataset, params: Optional[ParamMap] = None) -> float:
        evaluator = self.copy(params) if params else self
        frame = dataset.select(*evaluator._columns(dataset)).collect()
        if len(frame) == 0:
            raise InvalidDataError(f"{evaluator.uid}: cannot evaluate an empty dataset")
        value = float(evaluator._evaluate(frame))
        evaluator.logger.debug(f"{evaluator.uid}: {evaluator.metric} = {value:.6f} over {len(frame)} rows")
        return value

    def __call__(self, dataset: Dataset) -> float:
        return self.evaluate(dataset)

    @property
    def metric(self) -> str:
        return self.get("metric_name") if self.has_param("metric_name") else "score"

    @abstractmethod
    def _columns(self, dataset: Dataset) -> List[str]:
        pass

    @abstractmethod
    def _evaluate(self, frame: pd.DataFrame) -> float:
        pass

    @abstractmethod
    def is_larger_better(self) -> bool:
        pass


class BinaryClassificationEvaluator(HasLabelCol, Evaluator):
    """
    Area under the ROC or precision-recall curve.

    ``raw_prediction_col`` may hold a probability vector (the last entry is
    the positive-class score) or a numeric score.
    """

    uid_prefix = "binary_evaluator"
    params = (
        Param("raw_prediction_col", "score or probability vector column", "probability", value_type=ColumnName),
        Param("metric_name", "metric to compute", "area_under_roc",
              value_type=Literal["area_under_roc", "area_under_pr"]),
    )

    def _columns(self, dataset: Dataset) -> List[str]:
        return [self.get("raw_prediction_col"), self.get("label_col")]

    def _evaluate(self, frame: pd.DataFrame) -> float:
        scores = column_matrix(frame[self.get("raw_prediction_col")])[:, -1]
        labels = frame[self.get("label_col")].to_numpy(dtype=float)
        if len(np.unique(labels)) < 2:
            raise InvalidDataError(f"{self.uid}: both classes must be present to compute {self.metric}")
        if self.get("metric_name") == "area_under_roc":
            return roc_auc_score(labels, scores)
        precision, recall, _ = precision_recall_curve(labels, scores)
        return auc(recall, precision)

    def is_larger_better(self) -> bool:
        return True


class MulticlassClassificationEvaluator(HasLabelCol, HasPredictionCol, Evaluator):
    """Accuracy or weighted F1, precision and recall of predicted labels."""

    uid_prefix = "multiclass_evaluator"
    params = (
        Param("metric_name", "metric to compute", "f1",
              value_type=Literal["f1", "accuracy", "weighted_precision", "weighted_recall"]),
    )

    def _columns(self, dataset: Dataset) -> List[str]:
        return [self.get("prediction_col"), self.get("label_col")]

    def _evaluate(self, frame: pd.DataFrame) -> float:
        predicted = frame[self.get("prediction_col")].to_numpy(dtype=float)
        labels = frame[self.get("label_col")].to_numpy(dtype=float)
        metric = self.get("metric_name")
        if metric == "accuracy":
            return accuracy_score(labels, predicted)
        if metric == "f1":
            return f1_score(labels, predicted, average="weighted", zero_division=0)
        if metric == "weighted_precision":
            return precision_score(labels, predicted, average="weighted", zero_division=0)
        return recall_score(labels, predicted, average="weighted", zero_division=0)

    def is_larger_better(self) -> bool:
        return True


class RegressionEvaluator(HasLabelCol, HasPredictionCol, Evaluator):
    """RMSE, MSE, MAE or R²; only R² is larger-is-better."""

    uid_prefix = "regression_evaluator"
    params = (
        Param("metric_name", "metric to compute", "rmse", value_type=Literal["rmse", "mse", "mae", "r2"]),
    )

    def _columns(self, dataset: Dataset) -> List[str]:
        return [self.get("prediction_col"), self.get("label_col")]

    def _evaluate(self, frame: pd.DataFrame) -> float:
        predicted = frame[self.get("prediction_col")].to_numpy(dtype=float)
        labels = frame[self.get("label_col")].to_numpy(dtype=float)
        metric = self.get("metric_name")
        if metric == "rmse":
            return np.sqrt(mean_squared_error(labels, predicted))
        if metric == "mse":
            return mean_squared_error(labels, predicted)
        if metric == "mae":
            return mean_absolute_error(labels, predicted)
        return r2_score(labels, predicted)

    def is_larger_better(self) -> bool:
        return self.get("metric_name") == "r2"


class FunctionEvaluator(Evaluator):
    """Scores the collected dataset with a caller-supplied function."""

    uid_prefix = "function_evaluator"

    def __init__(self, fn: Callable[[pd.DataFrame], float], larger_is_better: bool = True,
                 columns: Optional[List[str]] = None, uid: Optional[str] = None):
        super().__init__(uid=uid)
        self.fn = fn
        self.larger_is_better = larger_is_better
        self.columns = list(columns) if columns else None

    @property
    def metric(self) -> str:
        return getattr(self.fn, "__name__", "score")

    def _columns(self, dataset: Dataset) -> List[str]:
        return self.columns or dataset.columns

    def _evaluate(self, frame: pd.DataFrame) -> float:
        return self.fn(frame)

    def is_larger_better(self) -> bool:
        return self.larger_is_better
