"""Column schema of a partitioned dataset."""

from collections import OrderedDict
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd
from pandas.api import types as ptypes

from ..core.errors import SchemaError


class ColumnType(Enum):
    """Semantic column types checked by pipeline stages."""
    NUMERIC = "numeric"
    STRING = "string"
    BOOLEAN = "boolean"
    VECTOR = "vector"
    UNKNOWN = "unknown"


def infer_column_type(series: pd.Series) -> ColumnType:
    """Infer the semantic type of a pandas column."""
    if ptypes.is_bool_dtype(series.dtype):
        return ColumnType.BOOLEAN
    if ptypes.is_numeric_dtype(series.dtype):
        return ColumnType.NUMERIC
    if isinstance(series.dtype, pd.CategoricalDtype):
        return ColumnType.STRING
    if not ptypes.is_object_dtype(series.dtype):
        return ColumnType.STRING if ptypes.is_string_dtype(series.dtype) else ColumnType.UNKNOWN

    # object columns: decide from the first non-null cell
    sample = series.dropna()
    if len(sample) == 0:
        return ColumnType.UNKNOWN
    first = sample.iloc[0]
    if isinstance(first, (np.ndarray, list, tuple)):
        return ColumnType.VECTOR
    if isinstance(first, str):
        return ColumnType.STRING
    if isinstance(first, (bool, np.bool_)):
        return ColumnType.BOOLEAN
    if isinstance(first, (int, float, np.number)):
        return ColumnType.NUMERIC
    return ColumnType.UNKNOWN


class Schema:
    """Ordered, immutable mapping of column name to ColumnType."""

    def __init__(self, columns: Optional[Iterable[Tuple[str, ColumnType]]] = None):
        self._columns: "OrderedDict[str, ColumnType]" = OrderedDict(columns or [])

    @classmethod
    def infer(cls, df: pd.DataFrame) -> "Schema":
        return cls((str(name), infer_column_type(df[name])) for name in df.columns)

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "Schema":
        return cls((name, ColumnType(value)) for name, value in data.items())

    def to_dict(self) -> Dict[str, str]:
        return {name: ctype.value for name, ctype in self._columns.items()}

    @property
    def names(self) -> List[str]:
        return list(self._columns.keys())

    def __contains__(self, name: str) -> bool:
        return name in self._columns

    def __getitem__(self, name: str) -> ColumnType:
        if name not in self._columns:
            raise SchemaError(f"Column '{name}' does not exist. Available columns: {self.names}",
                              {"column": name})
        return self._columns[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._columns)

    def __len__(self) -> int:
        return len(self._columns)

    def items(self):
        return self._columns.items()

    def __eq__(self, other) -> bool:
        return isinstance(other, Schema) and list(self._columns.items()) == list(other._columns.items())

    def __repr__(self) -> str:
        fields = ", ".join(f"{name}: {ctype.value}" for name, ctype in self._columns.items())
        return f"Schema({fields})"

    def require(self, name: str, *allowed: ColumnType, stage: Optional[str] = None) -> ColumnType:
        """Check that a column exists and, if types are given, has one of them."""
        owner = f"{stage}: " if stage else ""
        if name not in self._columns:
            raise SchemaError(f"{owner}input column '{name}' does not exist. "
                              f"Available columns: {self.names}",
                              {"column": name, "stage": stage})
        ctype = self._columns[name]
        if allowed and ctype not in allowed and ctype != ColumnType.UNKNOWN:
            expected = ", ".join(t.value for t in allowed)
            raise SchemaError(f"{owner}column '{name}' must be of type {expected} but is {ctype.value}",
                              {"column": name, "stage": stage, "actual": ctype.value})
        return ctype

    def add(self, name: str, ctype: ColumnType, stage: Optional[str] = None) -> "Schema":
        """Return a schema with a new trailing column."""
        if name in self._columns:
            owner = f"{stage}: " if stage else ""
            raise SchemaError(f"{owner}output column '{name}' already exists", {"column": name, "stage": stage})
        columns = list(self._columns.items())
        columns.append((name, ctype))
        return Schema(columns)

    def replace(self, name: str, ctype: ColumnType) -> "Schema":
        """Return a schema where ``name`` is added or overwritten in place."""
        columns = OrderedDict(self._columns)
        columns[name] = ctype
        return Schema(columns.items())

    def select(self, names: Iterable[str]) -> "Schema":
        names = list(names)
        for name in names:
            self.require(name)
        return Schema((name, self._columns[name]) for name in names)

    def drop(self, names: Iterable[str]) -> "Schema":
        dropped = set(names)
        return Schema((n, t) for n, t in self._columns.items() if n not in dropped)

    def vector_columns(self) -> List[str]:
        return [n for n, t in self._columns.items() if t == ColumnType.VECTOR]

    def empty_frame(self) -> pd.DataFrame:
        """Zero-row frame with this schema's columns."""
        frame = pd.DataFrame({name: pd.Series([], dtype=_empty_dtype(ctype))
                              for name, ctype in self._columns.items()})
        return frame[self.names] if len(self) else frame


def _empty_dtype(ctype: ColumnType) -> str:
    if ctype == ColumnType.NUMERIC:
        return "float64"
    if ctype == ColumnType.BOOLEAN:
        return "bool"
    return "object"
