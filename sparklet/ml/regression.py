"""
Linear models.

Training data is collected on the driver and solved with scikit-learn;
the fitted coefficients are kept as plain numpy state and prediction runs
per partition with numpy, so models never hold a scikit-learn object.

Regularization follows the elastic net convention

    (1/n) * loss + reg_param * (alpha * |w|_1 + (1 - alpha) / 2 * |w|_2^2)

with ``alpha = elastic_net_param``, translated to the matching
scikit-learn estimator and penalty scale.
"""

from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.linear_model import ElasticNet, Ridge
from sklearn.linear_model import LinearRegression as SklearnLinearRegression
from sklearn.linear_model import LogisticRegression as SklearnLogisticRegression

from ..core.errors import InvalidDataError
from ..core.interfaces import Estimator, Model
from ..core.params import ColumnName, Flag, Fraction, NonNegative, Param, Positive, PositiveInt
from ..core.registry import stage_registry
from ..distributed.dataset import Dataset
from ..distributed.schema import ColumnType, Schema
from .feature import column_matrix, vector_series
from .shared import HasFeaturesCol, HasLabelCol, HasPredictionCol


def _training_data(dataset: Dataset, features_col: str, label_col: str) -> Tuple[np.ndarray, np.ndarray]:
    frame = dataset.select(features_col, label_col).collect()
    if len(frame) == 0:
        raise InvalidDataError("Cannot fit on an empty dataset")
    X = column_matrix(frame[features_col])
    y = frame[label_col].to_numpy(dtype=float)
    if np.isnan(X).any() or np.isnan(y).any():
        raise InvalidDataError(f"Training data contains missing values in '{features_col}' or '{label_col}'")
    return X, y


class _LinearModelParams(HasFeaturesCol, HasLabelCol, HasPredictionCol):
    params = (
        Param("max_iter", "maximum solver iterations", 100, value_type=PositiveInt),
        Param("reg_param", "regularization strength", 0.0, value_type=NonNegative),
        Param("elastic_net_param", "L1 share of the penalty (0 = L2, 1 = L1)", 0.0,
              value_type=Fraction),
        Param("fit_intercept", "whether to fit an intercept term", True, value_type=Flag),
        Param("tol", "convergence tolerance", 1e-6, value_type=Positive),
    )

    def _output_schema(self, schema: Schema) -> Schema:
        schema.require(self.get("features_col"), ColumnType.VECTOR, ColumnType.NUMERIC, stage=self.uid)
        return schema.add(self.get("prediction_col"), ColumnType.NUMERIC, stage=self.uid)

    def _check_label(self, schema: Schema) -> None:
        schema.require(self.get("label_col"), ColumnType.NUMERIC, ColumnType.BOOLEAN, stage=self.uid)


# Logistic regression

class _LogisticRegressionParams(_LinearModelParams):
    params = (
        Param("probability_col", "class probability vector column", "probability", value_type=ColumnName),
        Param("threshold", "binary decision threshold on the positive-class probability", 0.5,
              value_type=Fraction),
    )

    def transform_schema(self, schema: Schema) -> Schema:
        schema = self._output_schema(schema)
        return schema.add(self.get("probability_col"), ColumnType.VECTOR, stage=self.uid)


class LogisticRegression(_LogisticRegressionParams, Estimator):
    """Binary or multinomial logistic regression."""

    type_tag = "logistic_regression"
    uid_prefix = "logistic_regression"

    def transform_schema(self, schema: Schema) -> Schema:
        self._check_label(schema)
        return super().transform_schema(schema)

    def _solver(self, num_rows: int):
        reg, alpha = self.get("reg_param"), self.get("elastic_net_param")
        kwargs = {"max_iter": self.get("max_iter"), "tol": self.get("tol"),
                  "fit_intercept": self.get("fit_intercept")}
        if reg == 0:
            kwargs["C"] = 1e12
        elif alpha == 0:
            kwargs["C"] = 1.0 / (num_rows * reg)
        else:
            kwargs.update(C=1.0 / (num_rows * reg), penalty="elasticnet", solver="saga", l1_ratio=alpha)
        return SklearnLogisticRegression(**kwargs)

    def _fit(self, dataset: Dataset) -> "LogisticRegressionModel":
        X, y = _training_data(dataset, self.get("features_col"), self.get("label_col"))
        classes = np.unique(y)
        if len(classes) < 2:
            raise InvalidDataError(f"{self.uid}: logistic regression needs at least two label values, "
                                   f"found {classes.tolist()}")

        solver = self._solver(len(y))
        solver.fit(X, y)
        self.logger.info(f"{self.uid}: fitted {len(classes)} classes on {len(y)} rows, "
                         f"{X.shape[1]} features ({solver.n_iter_.max()} iterations)")
        return LogisticRegressionModel(solver.coef_, solver.intercept_, solver.classes_,
                                       uid=self.uid, parent_uid=self.uid, **self.explicit_params())


class LogisticRegressionModel(_LogisticRegressionParams, Model):
    """
    Fitted logistic regression.

    ``coefficients`` has one row for binary problems (the positive class) and
    one row per class otherwise.
    """

    type_tag = "logistic_regression_model"
    uid_prefix = "logistic_regression"

    def __init__(self, coefficients, intercepts, classes, uid: Optional[str] = None,
                 parent_uid: Optional[str] = None, **kwargs):
        super().__init__(uid=uid, parent_uid=parent_uid, **kwargs)
        self.coefficients = np.atleast_2d(np.asarray(coefficients, dtype=float))
        self.intercepts = np.atleast_1d(np.asarray(intercepts, dtype=float))
        self.classes = np.asarray(classes, dtype=float)

    @property
    def num_classes(self) -> int:
        return len(self.classes)

    @property
    def num_features(self) -> int:
        return self.coefficients.shape[1]

    def predict_probability(self, X: np.ndarray) -> np.ndarray:
        scores = X @ self.coefficients.T + self.intercepts
        if self.coefficients.shape[0] == 1:
            positive = np.exp(-np.logaddexp(0.0, -scores[:, 0]))
            return np.column_stack([1.0 - positive, positive])
        scores = scores - scores.max(axis=1, keepdims=True)
        exp = np.exp(scores)
        return exp / exp.sum(axis=1, keepdims=True)

    def _transform(self, dataset: Dataset) -> Dataset:
        features, prediction = self.get("features_col"), self.get("prediction_col")
        probability, threshold = self.get("probability_col"), self.get("threshold")
        binary = self.coefficients.shape[0] == 1
        width = self.num_features
        model = self

        def predict(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            out = df.copy()
            X = column_matrix(df[features]).reshape(len(df), width)
            probs = model.predict_probability(X)
            if binary:
                picked = (probs[:, 1] > threshold).astype(np.int64)
            else:
                picked = probs.argmax(axis=1)
            out[prediction] = model.classes[picked] if len(df) else np.empty(0)
            out[probability] = vector_series(probs, df.index)
            return out

        return dataset.map_partitions(predict, self.transform_schema(dataset.schema), label=self.uid)

    def state(self) -> Dict[str, Any]:
        return {"coefficients": self.coefficients, "intercepts": self.intercepts, "classes": self.classes}

    @classmethod
    def from_state(cls, uid: str, params: Dict[str, Any], state: Dict[str, Any]) -> "LogisticRegressionModel":
        return cls(state["coefficients"], state["intercepts"], state["classes"], uid=uid, **params)


# Linear regression

class _LinearRegressionParams(_LinearModelParams):

    def transform_schema(self, schema: Schema) -> Schema:
        return self._output_schema(schema)


class LinearRegression(_LinearRegressionParams, Estimator):
    """Least squares with optional ridge, lasso or elastic net penalty."""

    type_tag = "linear_regression"
    uid_prefix = "linear_regression"

    def transform_schema(self, schema: Schema) -> Schema:
        self._check_label(schema)
        return super().transform_schema(schema)

    def _solver(self, num_rows: int):
        reg, alpha = self.get("reg_param"), self.get("elastic_net_param")
        fit_intercept = self.get("fit_intercept")
        if reg == 0:
            return SklearnLinearRegression(fit_intercept=fit_intercept)
        if alpha == 0:
            return Ridge(alpha=num_rows * reg, fit_intercept=fit_intercept, tol=self.get("tol"))
        return ElasticNet(alpha=reg, l1_ratio=alpha, fit_intercept=fit_intercept,
                          max_iter=self.get("max_iter"), tol=self.get("tol"))

    def _fit(self, dataset: Dataset) -> "LinearRegressionModel":
        X, y = _training_data(dataset, self.get("features_col"), self.get("label_col"))
        solver = self._solver(len(y))
        solver.fit(X, y)
        self.logger.info(f"{self.uid}: fitted {type(solver).__name__} on {len(y)} rows, {X.shape[1]} features")
        return LinearRegressionModel(solver.coef_, float(np.ravel(solver.intercept_)[0]),
                                     uid=self.uid, parent_uid=self.uid, **self.explicit_params())


class LinearRegressionModel(_LinearRegressionParams, Model):
    """Fitted linear regression."""

    type_tag = "linear_regression_model"
    uid_prefix = "linear_regression"

    def __init__(self, coefficients: Sequence[float], intercept: float, uid: Optional[str] = None,
                 parent_uid: Optional[str] = None, **kwargs):
        super().__init__(uid=uid, parent_uid=parent_uid, **kwargs)
        self.coefficients = np.ravel(np.asarray(coefficients, dtype=float))
        self.intercept = float(intercept)

    def predict(self, X: np.ndarray) -> np.ndarray:
        return X @ self.coefficients + self.intercept

    def _transform(self, dataset: Dataset) -> Dataset:
        features, prediction = self.get("features_col"), self.get("prediction_col")
        width = len(self.coefficients)
        model = self

        def predict(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            out = df.copy()
            out[prediction] = model.predict(column_matrix(df[features]).reshape(len(df), width))
            return out

        return dataset.map_partitions(predict, self.transform_schema(dataset.schema), label=self.uid)

    def state(self) -> Dict[str, Any]:
        return {"coefficients": self.coefficients, "intercept": self.intercept}

    @classmethod
    def from_state(cls, uid: str, params: Dict[str, Any], state: Dict[str, Any]) -> "LinearRegressionModel":
        return cls(state["coefficients"], float(np.ravel(state["intercept"])[0]), uid=uid, **params)


for _stage in (LogisticRegression, LogisticRegressionModel, LinearRegression, LinearRegressionModel):
    stage_registry.register_stage(_stage.type_tag, _stage)
