"""Pipeline stages, evaluators, model selection and persistence."""

from .pipeline import Pipeline, PipelineModel
from .feature import (
    Binarizer,
    Bucketizer,
    ColumnExpression,
    IndexToString,
    MinMaxScaler,
    MinMaxScalerModel,
    OneHotEncoder,
    OneHotEncoderModel,
    StandardScaler,
    StandardScalerModel,
    StringIndexer,
    StringIndexerModel,
    VectorAssembler
)
from .regression import (
    LinearRegression,
    LinearRegressionModel,
    LogisticRegression,
    LogisticRegressionModel
)
from .evaluation import (
    BinaryClassificationEvaluator,
    Evaluator,
    FunctionEvaluator,
    MulticlassClassificationEvaluator,
    RegressionEvaluator
)
from .tuning import (
    CrossValidator,
    CrossValidatorModel,
    ParamGridBuilder,
    TrainValidationSplit,
    TrainValidationSplitModel,
    tune
)
from .persistence import load, save

__all__ = [
    "Pipeline",
    "PipelineModel",
    "Binarizer",
    "Bucketizer",
    "ColumnExpression",
    "IndexToString",
    "MinMaxScaler",
    "MinMaxScalerModel",
    "OneHotEncoder",
    "OneHotEncoderModel",
    "StandardScaler",
    "StandardScalerModel",
    "StringIndexer",
    "StringIndexerModel",
    "VectorAssembler",
    "LinearRegression",
    "LinearRegressionModel",
    "LogisticRegression",
    "LogisticRegressionModel",
    "BinaryClassificationEvaluator",
    "Evaluator",
    "FunctionEvaluator",
    "MulticlassClassificationEvaluator",
    "RegressionEvaluator",
    "CrossValidator",
    "CrossValidatorModel",
    "ParamGridBuilder",
    "TrainValidationSplit",
    "TrainValidationSplitModel",
    "tune",
    "load",
    "save",
]
