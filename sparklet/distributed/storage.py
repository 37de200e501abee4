"""Columnar storage of partitions for checkpoints and file sources."""

import logging
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .schema import ColumnType, Schema

logger = logging.getLogger(__name__)

PART_TEMPLATE = "part-{index:05d}.parquet"


def part_file_name(index: int) -> str:
    return PART_TEMPLATE.format(index=index)


class PartitionStorage:
    """Reads and writes partitions as parquet files, one file per partition."""

    def write_partition(self, df: pd.DataFrame, directory: Union[str, Path], index: int,
                        schema: Optional[Schema] = None) -> Path:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / part_file_name(index)

        frame = df.reset_index(drop=True)
        if schema is not None:
            for column in schema.vector_columns():
                if column in frame.columns:
                    frame[column] = [None if v is None else np.asarray(v, dtype=float).tolist()
                                     for v in frame[column]]

        table = pa.Table.from_pandas(frame, preserve_index=False)
        pq.write_table(table, path)
        return path

    def read_partition(self, path: Union[str, Path], schema: Optional[Schema] = None) -> pd.DataFrame:
        df = pq.read_table(path).to_pandas()
        return self.restore_types(df, schema)

    def restore_types(self, df: pd.DataFrame, schema: Optional[Schema]) -> pd.DataFrame:
        """Turn list cells of vector columns back into float arrays."""
        if schema is None:
            return df
        for column in schema.vector_columns():
            if column in df.columns:
                df[column] = pd.Series(
                    [None if v is None else np.asarray(v, dtype=float) for v in df[column]],
                    index=df.index, dtype=object
                )
        if len(schema):
            missing = [c for c in schema.names if c not in df.columns]
            if not missing:
                df = df[schema.names]
        return df

    def list_parquet_files(self, path: Union[str, Path]) -> List[Path]:
        path = Path(path)
        if path.is_file():
            return [path]
        return sorted(path.glob("*.parquet"))

    def infer_parquet_schema(self, path: Union[str, Path]) -> Schema:
        arrow_schema = pq.read_schema(path)
        columns = []
        for arrow_field in arrow_schema:
            columns.append((arrow_field.name, _column_type_from_arrow(arrow_field.type)))
        return Schema(columns)


def _column_type_from_arrow(arrow_type: pa.DataType) -> ColumnType:
    if pa.types.is_boolean(arrow_type):
        return ColumnType.BOOLEAN
    if pa.types.is_integer(arrow_type) or pa.types.is_floating(arrow_type) or pa.types.is_decimal(arrow_type):
        return ColumnType.NUMERIC
    if pa.types.is_string(arrow_type) or pa.types.is_large_string(arrow_type) \
            or pa.types.is_dictionary(arrow_type):
        return ColumnType.STRING
    if pa.types.is_list(arrow_type) or pa.types.is_large_list(arrow_type) \
            or pa.types.is_fixed_size_list(arrow_type):
        return ColumnType.VECTOR
    return ColumnType.UNKNOWN
