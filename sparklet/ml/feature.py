"""
Feature transformers and estimators.

Estimators compute their statistics with ``Dataset.tree_aggregate`` so rows
are never collected on the driver; the resulting models transform each
partition independently.
"""

from collections import Counter
from typing import Any, Dict, List, Literal, Optional, Sequence

import numpy as np
import pandas as pd

from ..core.errors import InvalidDataError, SchemaError
from ..core.interfaces import Estimator, Model, Transformer
from ..core.params import Expression, Flag, Labels, Number, Param, Splits
from ..core.registry import stage_registry
from ..distributed.dataset import Dataset
from ..distributed.schema import ColumnType, Schema, infer_column_type
from .shared import HasInputCol, HasInputCols, HasOutputCol, handle_invalid_param


def column_matrix(series: pd.Series) -> np.ndarray:
    """Numeric or vector column as a 2-D float matrix (one row per value)."""
    if len(series) == 0:
        return np.empty((0, 0))
    first = series.iloc[0]
    if isinstance(first, (np.ndarray, list, tuple)):
        return np.vstack([np.asarray(v, dtype=float) for v in series])
    return series.to_numpy(dtype=float).reshape(-1, 1)


def vector_series(matrix: np.ndarray, index: pd.Index) -> pd.Series:
    return pd.Series(list(matrix), index=index, dtype=object)


def _with_vectors(df: pd.DataFrame, column: str, matrix: np.ndarray) -> pd.DataFrame:
    out = df.copy()
    out[column] = vector_series(matrix, df.index)
    return out


def _merge_moments(a, b):
    """Combine (count, mean, M2) triples of two row sets."""
    if a is None:
        return b
    if b is None:
        return a
    count_a, mean_a, m2_a = a
    count_b, mean_b, m2_b = b
    count = count_a + count_b
    delta = mean_b - mean_a
    mean = mean_a + delta * count_b / count
    m2 = m2_a + m2_b + delta ** 2 * count_a * count_b / count
    return count, mean, m2


def _merge_extrema(a, b):
    if a is None:
        return b
    if b is None:
        return a
    return np.minimum(a[0], b[0]), np.maximum(a[1], b[1])


# String indexing

class _StringIndexerParams(HasInputCol, HasOutputCol):
    params = (
        handle_invalid_param("error", "skip", "keep"),
        Param("string_order_type", "label ordering", "frequency_desc",
              value_type=Literal["frequency_desc", "frequency_asc", "alphabet_desc", "alphabet_asc"]),
    )

    def transform_schema(self, schema: Schema) -> Schema:
        schema.require(self.get("input_col"), ColumnType.STRING, ColumnType.NUMERIC, ColumnType.BOOLEAN,
                       stage=self.uid)
        return schema.add(self.get("output_col"), ColumnType.NUMERIC, stage=self.uid)


class StringIndexer(_StringIndexerParams, Estimator):
    """
    Maps a string column to label indices.

    With the default ``frequency_desc`` order the most frequent label gets
    index 0 and ties are broken alphabetically. Numeric inputs are indexed by
    their string form.
    """

    type_tag = "string_indexer"
    uid_prefix = "string_indexer"

    def _fit(self, dataset: Dataset) -> "StringIndexerModel":
        column = self.get("input_col")

        def count_labels(acc: Counter, df: pd.DataFrame) -> Counter:
            acc.update(df[column].dropna().astype(str).value_counts().to_dict())
            return acc

        counts = dataset.select(column).tree_aggregate(Counter(), count_labels, lambda a, b: a + b)
        order = self.get("string_order_type")
        if order == "frequency_desc":
            labels = sorted(counts, key=lambda label: (-counts[label], label))
        elif order == "frequency_asc":
            labels = sorted(counts, key=lambda label: (counts[label], label))
        else:
            labels = sorted(counts, reverse=(order == "alphabet_desc"))

        self.logger.info(f"{self.uid}: indexed {len(labels)} labels of column '{column}'")
        return StringIndexerModel(labels, uid=self.uid, parent_uid=self.uid, **self.explicit_params())


class StringIndexerModel(_StringIndexerParams, Model):
    """Fitted StringIndexer."""

    type_tag = "string_indexer_model"
    uid_prefix = "string_indexer"

    def __init__(self, labels: Sequence[str], uid: Optional[str] = None,
                 parent_uid: Optional[str] = None, **kwargs):
        super().__init__(uid=uid, parent_uid=parent_uid, **kwargs)
        self.labels = [str(label) for label in labels]

    def _transform(self, dataset: Dataset) -> Dataset:
        column, output = self.get("input_col"), self.get("output_col")
        handle = self.get("handle_invalid")
        mapping = {label: float(i) for i, label in enumerate(self.labels)}
        unknown_index = float(len(self.labels))
        uid = self.uid

        def index(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            out = df.copy()
            mapped = df[column].map(str, na_action="ignore").map(mapping)
            invalid = mapped.isna().to_numpy()
            if invalid.any():
                if handle == "error":
                    bad = df[column][invalid].iloc[0]
                    raise InvalidDataError(f"{uid}: unseen label {bad!r} in column '{column}'. "
                                           f"Set handle_invalid to 'skip' or 'keep' to accept it.")
                if handle == "skip":
                    out, mapped = out[~invalid], mapped[~invalid]
                else:
                    mapped = mapped.fillna(unknown_index)
            out[output] = mapped.astype("float64")
            return out.reset_index(drop=True)

        return dataset.map_partitions(index, self.transform_schema(dataset.schema), label=f"{self.uid}")

    def state(self) -> Dict[str, Any]:
        return {"labels": list(self.labels)}

    @classmethod
    def from_state(cls, uid: str, params: Dict[str, Any], state: Dict[str, Any]) -> "StringIndexerModel":
        return cls(state["labels"], uid=uid, **params)


class IndexToString(HasInputCol, HasOutputCol, Transformer):
    """Maps label indices back to the labels they stand for."""

    type_tag = "index_to_string"
    uid_prefix = "index_to_string"
    params = (Param("labels", "labels in index order", value_type=Labels),)

    def transform_schema(self, schema: Schema) -> Schema:
        schema.require(self.get("input_col"), ColumnType.NUMERIC, stage=self.uid)
        self.get("labels")
        return schema.add(self.get("output_col"), ColumnType.STRING, stage=self.uid)

    def _transform(self, dataset: Dataset) -> Dataset:
        column, output = self.get("input_col"), self.get("output_col")
        labels = np.asarray(self.get("labels"), dtype=object)
        uid = self.uid

        def to_string(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            out = df.copy()
            values = df[column].to_numpy(dtype=float)
            valid = (values >= 0) & (values < len(labels)) & (values == np.floor(values))
            if not valid.all():
                bad = values[~valid][0]
                raise InvalidDataError(f"{uid}: index {bad} is not a valid label index "
                                       f"(0..{len(labels) - 1})")
            out[output] = labels[values.astype(np.int64)] if len(values) else pd.Series([], dtype=object)
            return out

        return dataset.map_partitions(to_string, self.transform_schema(dataset.schema), label=self.uid)


# One-hot encoding

class _OneHotEncoderParams(HasInputCol, HasOutputCol):
    params = (
        Param("drop_last", "drop the last category so vectors are linearly independent", True,
              value_type=Flag),
        handle_invalid_param("error", "keep"),
    )

    def transform_schema(self, schema: Schema) -> Schema:
        schema.require(self.get("input_col"), ColumnType.NUMERIC, stage=self.uid)
        return schema.add(self.get("output_col"), ColumnType.VECTOR, stage=self.uid)


class OneHotEncoder(_OneHotEncoderParams, Estimator):
    """Learns the number of categories of a label index column."""

    type_tag = "one_hot_encoder"
    uid_prefix = "one_hot_encoder"

    def _fit(self, dataset: Dataset) -> "OneHotEncoderModel":
        column = self.get("input_col")

        def largest(acc: float, df: pd.DataFrame) -> float:
            values = df[column].dropna()
            return max(acc, float(values.max())) if len(values) else acc

        top = dataset.select(column).tree_aggregate(-1.0, largest, max)
        if top < 0:
            raise InvalidDataError(f"{self.uid}: column '{column}' has no non-negative values to encode")
        return OneHotEncoderModel(int(top) + 1, uid=self.uid, parent_uid=self.uid, **self.explicit_params())


class OneHotEncoderModel(_OneHotEncoderParams, Model):
    """Fitted OneHotEncoder."""

    type_tag = "one_hot_encoder_model"
    uid_prefix = "one_hot_encoder"

    def __init__(self, category_size: int, uid: Optional[str] = None,
                 parent_uid: Optional[str] = None, **kwargs):
        super().__init__(uid=uid, parent_uid=parent_uid, **kwargs)
        self.category_size = int(category_size)

    @property
    def vector_size(self) -> int:
        size = self.category_size + (1 if self.get("handle_invalid") == "keep" else 0)
        return size - 1 if self.get("drop_last") else size

    def _transform(self, dataset: Dataset) -> Dataset:
        column, output = self.get("input_col"), self.get("output_col")
        keep = self.get("handle_invalid") == "keep"
        size, length = self.category_size, self.vector_size
        uid = self.uid

        def encode(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            values = df[column].to_numpy(dtype=float)
            valid = (values >= 0) & (values < size) & (values == np.floor(values))
            if not valid.all():
                if not keep:
                    bad = values[~valid][0]
                    raise InvalidDataError(f"{uid}: value {bad} is not a category index in [0, {size})")
                values = np.where(valid, values, size)
            indices = values.astype(np.int64)
            matrix = np.zeros((len(df), length))
            rows = np.arange(len(df))
            hot = indices < length
            matrix[rows[hot], indices[hot]] = 1.0
            return _with_vectors(df, output, matrix)

        return dataset.map_partitions(encode, self.transform_schema(dataset.schema), label=self.uid)

    def state(self) -> Dict[str, Any]:
        return {"category_size": self.category_size}

    @classmethod
    def from_state(cls, uid: str, params: Dict[str, Any], state: Dict[str, Any]) -> "OneHotEncoderModel":
        return cls(int(state["category_size"]), uid=uid, **params)


class VectorAssembler(HasInputCols, HasOutputCol, Transformer):
    """Concatenates numeric and vector columns into one vector column."""

    type_tag = "vector_assembler"
    uid_prefix = "vector_assembler"
    params = (handle_invalid_param("error", "skip", "keep"),)

    def transform_schema(self, schema: Schema) -> Schema:
        for column in self.get("input_cols"):
            schema.require(column, ColumnType.NUMERIC, ColumnType.BOOLEAN, ColumnType.VECTOR, stage=self.uid)
        return schema.add(self.get("output_col"), ColumnType.VECTOR, stage=self.uid)

    def _transform(self, dataset: Dataset) -> Dataset:
        columns, output = self.get("input_cols"), self.get("output_col")
        handle = self.get("handle_invalid")
        uid = self.uid

        def assemble(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            if len(df) == 0:
                out = df.copy()
                out[output] = pd.Series([], dtype=object)
                return out
            matrix = np.hstack([column_matrix(df[c]) for c in columns])
            missing = np.isnan(matrix).any(axis=1)
            if missing.any():
                if handle == "error":
                    raise InvalidDataError(f"{uid}: {int(missing.sum())} rows have missing values in "
                                           f"{columns}. Set handle_invalid to 'skip' or 'keep'.")
                if handle == "skip":
                    return _with_vectors(df[~missing], output, matrix[~missing]).reset_index(drop=True)
            return _with_vectors(df, output, matrix)

        return dataset.map_partitions(assemble, self.transform_schema(dataset.schema), label=self.uid)


# Scaling

class _StandardScalerParams(HasInputCol, HasOutputCol):
    params = (
        Param("with_mean", "center features before scaling", False, value_type=Flag),
        Param("with_std", "scale features to unit standard deviation", True, value_type=Flag),
        Param("ddof", "delta degrees of freedom of the standard deviation", 0,
              value_type=Literal[0, 1]),
    )

    def transform_schema(self, schema: Schema) -> Schema:
        schema.require(self.get("input_col"), ColumnType.VECTOR, ColumnType.NUMERIC, stage=self.uid)
        return schema.add(self.get("output_col"), ColumnType.VECTOR, stage=self.uid)


class StandardScaler(_StandardScalerParams, Estimator):
    """
    Standardizes features using column means and standard deviations.

    Per-partition count, mean and sum of squared deviations are merged
    pairwise, so the statistics are exact for any partitioning. Features with
    zero standard deviation are scaled to 0.0.
    """

    type_tag = "standard_scaler"
    uid_prefix = "standard_scaler"

    def _fit(self, dataset: Dataset) -> "StandardScalerModel":
        column = self.get("input_col")

        def moments(acc, df: pd.DataFrame):
            matrix = column_matrix(df[column])
            if len(matrix) == 0:
                return acc
            mean = matrix.mean(axis=0)
            return _merge_moments(acc, (len(matrix), mean, ((matrix - mean) ** 2).sum(axis=0)))

        result = dataset.select(column).tree_aggregate(None, moments, _merge_moments)
        if result is None:
            raise InvalidDataError(f"{self.uid}: cannot fit on an empty dataset")

        count, mean, m2 = result
        ddof = self.get("ddof")
        std = np.sqrt(m2 / (count - ddof)) if count > ddof else np.zeros_like(mean)
        return StandardScalerModel(mean, std, uid=self.uid, parent_uid=self.uid, **self.explicit_params())


class StandardScalerModel(_StandardScalerParams, Model):
    """Fitted StandardScaler."""

    type_tag = "standard_scaler_model"
    uid_prefix = "standard_scaler"

    def __init__(self, mean: Sequence[float], std: Sequence[float], uid: Optional[str] = None,
                 parent_uid: Optional[str] = None, **kwargs):
        super().__init__(uid=uid, parent_uid=parent_uid, **kwargs)
        self.mean = np.asarray(mean, dtype=float)
        self.std = np.asarray(std, dtype=float)

    def _transform(self, dataset: Dataset) -> Dataset:
        column, output = self.get("input_col"), self.get("output_col")
        with_mean, with_std = self.get("with_mean"), self.get("with_std")
        mean = self.mean
        scale = np.divide(1.0, self.std, out=np.zeros_like(self.std), where=self.std > 0)

        def standardize(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            matrix = column_matrix(df[column]).reshape(len(df), len(mean))
            if with_mean:
                matrix = matrix - mean
            if with_std:
                matrix = matrix * scale
            return _with_vectors(df, output, matrix)

        return dataset.map_partitions(standardize, self.transform_schema(dataset.schema), label=self.uid)

    def state(self) -> Dict[str, Any]:
        return {"mean": self.mean, "std": self.std}

    @classmethod
    def from_state(cls, uid: str, params: Dict[str, Any], state: Dict[str, Any]) -> "StandardScalerModel":
        return cls(state["mean"], state["std"], uid=uid, **params)


class _MinMaxScalerParams(HasInputCol, HasOutputCol):
    params = (
        Param("min", "lower bound of the rescaled range", 0.0, value_type=Number),
        Param("max", "upper bound of the rescaled range", 1.0, value_type=Number),
    )

    def transform_schema(self, schema: Schema) -> Schema:
        if self.get("min") >= self.get("max"):
            raise SchemaError(f"{self.uid}: min ({self.get('min')}) must be below max ({self.get('max')})")
        schema.require(self.get("input_col"), ColumnType.VECTOR, ColumnType.NUMERIC, stage=self.uid)
        return schema.add(self.get("output_col"), ColumnType.VECTOR, stage=self.uid)


class MinMaxScaler(_MinMaxScalerParams, Estimator):
    """Rescales each feature to [min, max] using the observed range."""

    type_tag = "min_max_scaler"
    uid_prefix = "min_max_scaler"

    def _fit(self, dataset: Dataset) -> "MinMaxScalerModel":
        column = self.get("input_col")

        def extrema(acc, df: pd.DataFrame):
            matrix = column_matrix(df[column])
            if len(matrix) == 0:
                return acc
            return _merge_extrema(acc, (matrix.min(axis=0), matrix.max(axis=0)))

        result = dataset.select(column).tree_aggregate(None, extrema, _merge_extrema)
        if result is None:
            raise InvalidDataError(f"{self.uid}: cannot fit on an empty dataset")
        return MinMaxScalerModel(result[0], result[1], uid=self.uid, parent_uid=self.uid,
                                 **self.explicit_params())


class MinMaxScalerModel(_MinMaxScalerParams, Model):
    """Fitted MinMaxScaler; constant features map to the middle of the range."""

    type_tag = "min_max_scaler_model"
    uid_prefix = "min_max_scaler"

    def __init__(self, original_min: Sequence[float], original_max: Sequence[float],
                 uid: Optional[str] = None, parent_uid: Optional[str] = None, **kwargs):
        super().__init__(uid=uid, parent_uid=parent_uid, **kwargs)
        self.original_min = np.asarray(original_min, dtype=float)
        self.original_max = np.asarray(original_max, dtype=float)

    def _transform(self, dataset: Dataset) -> Dataset:
        column, output = self.get("input_col"), self.get("output_col")
        low, high = self.get("min"), self.get("max")
        original_min = self.original_min
        span = self.original_max - self.original_min
        safe_span = np.where(span != 0, span, 1.0)

        def rescale(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            matrix = column_matrix(df[column]).reshape(len(df), len(original_min))
            unit = np.where(span != 0, (matrix - original_min) / safe_span, 0.5)
            return _with_vectors(df, output, unit * (high - low) + low)

        return dataset.map_partitions(rescale, self.transform_schema(dataset.schema), label=self.uid)

    def state(self) -> Dict[str, Any]:
        return {"original_min": self.original_min, "original_max": self.original_max}

    @classmethod
    def from_state(cls, uid: str, params: Dict[str, Any], state: Dict[str, Any]) -> "MinMaxScalerModel":
        return cls(state["original_min"], state["original_max"], uid=uid, **params)


# Thresholding and bucketing

class Binarizer(HasInputCol, HasOutputCol, Transformer):
    """1.0 where the value exceeds the threshold, 0.0 elsewhere."""

    type_tag = "binarizer"
    uid_prefix = "binarizer"
    params = (Param("threshold", "values above the threshold map to 1.0", 0.0, value_type=Number),)

    def transform_schema(self, schema: Schema) -> Schema:
        schema.require(self.get("input_col"), ColumnType.NUMERIC, ColumnType.BOOLEAN, stage=self.uid)
        return schema.add(self.get("output_col"), ColumnType.NUMERIC, stage=self.uid)

    def _transform(self, dataset: Dataset) -> Dataset:
        column, output, threshold = self.get("input_col"), self.get("output_col"), self.get("threshold")

        def binarize(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            out = df.copy()
            out[output] = (df[column].to_numpy(dtype=float) > threshold).astype("float64")
            return out

        return dataset.map_partitions(binarize, self.transform_schema(dataset.schema), label=self.uid)


class Bucketizer(HasInputCol, HasOutputCol, Transformer):
    """
    Maps a numeric column to bucket indices.

    ``splits`` of length n + 1 define n buckets [s0, s1), ..., [s(n-1), sn];
    the last bucket includes its upper bound.
    """

    type_tag = "bucketizer"
    uid_prefix = "bucketizer"
    params = (
        Param("splits", "at least three strictly increasing bucket boundaries", value_type=Splits),
        handle_invalid_param("error", "skip", "keep"),
    )

    def transform_schema(self, schema: Schema) -> Schema:
        schema.require(self.get("input_col"), ColumnType.NUMERIC, stage=self.uid)
        self.get("splits")
        return schema.add(self.get("output_col"), ColumnType.NUMERIC, stage=self.uid)

    def _transform(self, dataset: Dataset) -> Dataset:
        column, output = self.get("input_col"), self.get("output_col")
        splits = np.asarray(self.get("splits"), dtype=float)
        handle = self.get("handle_invalid")
        last_bucket = len(splits) - 2
        uid = self.uid

        def bucketize(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            out = df.copy()
            values = df[column].to_numpy(dtype=float)
            buckets = np.searchsorted(splits, values, side="right") - 1
            buckets = np.where(values == splits[-1], last_bucket, buckets).astype("float64")
            invalid = np.isnan(values) | (values < splits[0]) | (values > splits[-1])
            if invalid.any():
                if handle == "error":
                    raise InvalidDataError(f"{uid}: value {values[invalid][0]} of column '{column}' "
                                           f"is outside the splits [{splits[0]}, {splits[-1]}]")
                if handle == "skip":
                    out, buckets = out[~invalid], buckets[~invalid]
                else:
                    buckets = np.where(invalid, last_bucket + 1, buckets)
            out[output] = buckets
            return out.reset_index(drop=True)

        return dataset.map_partitions(bucketize, self.transform_schema(dataset.schema), label=self.uid)


class ColumnExpression(HasOutputCol, Transformer):
    """Adds or replaces a column computed from a pandas ``eval`` expression."""

    type_tag = "column_expression"
    uid_prefix = "column_expression"
    params = (Param("expression", "pandas eval expression over the input columns", value_type=Expression),)

    def transform_schema(self, schema: Schema) -> Schema:
        expression = self.get("expression")
        try:
            result = schema.empty_frame().eval(expression)
        except (NameError, KeyError, SyntaxError, ValueError, TypeError) as e:
            raise SchemaError(f"{self.uid}: cannot evaluate '{expression}' against columns "
                              f"{schema.names}: {e}", {"stage": self.uid})
        ctype = infer_column_type(result) if isinstance(result, pd.Series) else ColumnType.UNKNOWN
        return schema.replace(self.get("output_col"), ctype)

    def _transform(self, dataset: Dataset) -> Dataset:
        expression, output = self.get("expression"), self.get("output_col")

        def evaluate(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            out = df.copy()
            out[output] = df.eval(expression) if len(df) else pd.Series([], dtype="float64")
            return out

        return dataset.map_partitions(evaluate, self.transform_schema(dataset.schema), label=self.uid)


for _stage in (StringIndexer, StringIndexerModel, IndexToString, OneHotEncoder, OneHotEncoderModel,
               VectorAssembler, StandardScaler, StandardScalerModel, MinMaxScaler, MinMaxScalerModel,
               Binarizer, Bucketizer, ColumnExpression):
    stage_registry.register_stage(_stage.type_tag, _stage)
