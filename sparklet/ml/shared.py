"""Parameter declarations shared by several stages."""

from typing import Literal

from ..core.params import ColumnName, ColumnNames, Param, Params


class HasInputCol(Params):
    params = (Param("input_col", "input column name", value_type=ColumnName),)


class HasInputCols(Params):
    params = (Param("input_cols", "input column names", value_type=ColumnNames),)


class HasOutputCol(Params):
    params = (Param("output_col", "output column name", value_type=ColumnName),)


class HasFeaturesCol(Params):
    params = (Param("features_col", "features vector column", "features", value_type=ColumnName),)


class HasLabelCol(Params):
    params = (Param("label_col", "label column", "label", value_type=ColumnName),)


class HasPredictionCol(Params):
    params = (Param("prediction_col", "prediction column", "prediction", value_type=ColumnName),)


def handle_invalid_param(*choices: str, default: str = "error") -> Param:
    return Param("handle_invalid", f"how to handle invalid entries: {', '.join(choices)}", default,
                 value_type=Literal[choices])
