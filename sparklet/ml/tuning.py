"""
Model selection: parameter grids, k-fold cross validation and train/validation split.
"""

import itertools
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pydantic import Field, StrictInt

from ..core.errors import InvalidDataError, ParameterError
from ..core.interfaces import Estimator, Model, PipelineStage, Transformer
from ..core.params import Flag, OpenFraction, Param, ParamMap, Params, PositiveInt
from ..distributed.dataset import Dataset
from ..distributed.schema import ColumnType, Schema
from .evaluation import Evaluator


class ParamGridBuilder:
    """
    Builds the cross product of parameter values.

    Param maps are keyed by ``(stage uid, param name)``. ``build`` enumerates
    combinations with the first added parameter varying slowest.
    """

    def __init__(self):
        self._grid: "OrderedDict[Tuple[str, str], List[Any]]" = OrderedDict()

    def add_grid(self, stage: Params, name: str, values: Iterable[Any]) -> "ParamGridBuilder":
        if not stage.has_param(name):
            raise ParameterError(f"{stage.uid} has no parameter '{name}'", {"param": name, "stage": stage.uid})
        values = list(values)
        if not values:
            raise ParameterError(f"Grid for {stage.uid}.{name} has no values", {"param": name, "stage": stage.uid})
        param = stage.param_definitions()[name]
        self._grid[(stage.uid, name)] = [param.validate(value, stage.uid) for value in values]
        return self

    def base_on(self, stage: Params, **fixed) -> "ParamGridBuilder":
        """Fix parameters of ``stage`` to single values in every combination."""
        for name, value in fixed.items():
            self.add_grid(stage, name, [value])
        return self

    def build(self) -> List[ParamMap]:
        keys = list(self._grid)
        return [dict(zip(keys, combination)) for combination in itertools.product(*self._grid.values())]


def _stage_uids(stage: PipelineStage) -> set:
    uids = {stage.uid}
    for child in getattr(stage, "stages", ()):
        uids |= _stage_uids(child)
    return uids


def _aggregate(scores: Sequence[float], method: str) -> float:
    return float(np.median(scores)) if method == "median" else float(np.mean(scores))


class _RowPermutation:
    """Seeded permutation of global row positions, sliced per partition."""

    def __init__(self, sizes: Sequence[int], seed: Optional[int]):
        self.total = int(sum(sizes))
        self.offsets = np.concatenate([[0], np.cumsum(sizes)[:-1]]).astype(np.int64)
        self.permutation = np.random.default_rng(seed).permutation(self.total)

    def __call__(self, partition: int, length: int) -> np.ndarray:
        start = self.offsets[partition]
        return self.permutation[start:start + length]


def _global_positions(dataset: Dataset, seed: Optional[int], groups: int, uid: str) -> _RowPermutation:
    permutation = _RowPermutation(dataset.partition_sizes(), seed)
    if permutation.total < groups:
        raise InvalidDataError(f"{uid}: {permutation.total} rows cannot be split into {groups} groups")
    return permutation


def select_best(scores: Sequence[float], larger_is_better: bool, tie_break: str = "first") -> int:
    """
    Index of the best score. NaN scores never win; equal scores resolve to
    the first (or last) in enumeration order.
    """
    best_index, best_score = 0, None
    for index, score in enumerate(scores):
        if np.isnan(score):
            continue
        if best_score is None:
            best_index, best_score = index, score
            continue
        better = score > best_score if larger_is_better else score < best_score
        if better or (tie_break == "last" and score == best_score):
            best_index, best_score = index, score
    return best_index


class _ValidatorParams(Params):
    params = (
        Param("seed", "seed for the random row assignment", value_type=StrictInt),
        Param("parallelism", "number of fits evaluated concurrently", value_type=PositiveInt),
        Param("tie_break", "winner among equal scores", value_type=Literal["first", "last"]),
        Param("collect_sub_models", "keep every fitted candidate model", False, value_type=Flag),
    )

    def __init__(self, estimator: Estimator, param_maps: Optional[Sequence[ParamMap]], evaluator: Evaluator,
                 uid: Optional[str] = None, **kwargs):
        super().__init__(uid=uid, **kwargs)
        if not isinstance(estimator, Estimator):
            raise ParameterError(f"{self.uid}: {estimator!r} is not an estimator")
        if not isinstance(evaluator, Evaluator):
            raise ParameterError(f"{self.uid}: {evaluator!r} is not an evaluator")
        self.estimator = estimator
        self.evaluator = evaluator
        self.param_maps = list(param_maps) if param_maps else [{}]

        known = _stage_uids(estimator)
        for param_map in self.param_maps:
            for uid, name in param_map:
                if uid not in known:
                    raise ParameterError(f"{self.uid}: grid parameter {uid}.{name} does not belong "
                                         f"to any stage of {estimator.uid}", {"param": name, "stage": uid})

    def _setting(self, name: str, defaults) -> Any:
        """Explicit param value, else the session's tuning default."""
        if self.is_set(name):
            return self.get(name)
        if self.param_definitions()[name].has_default:
            return self.get(name)
        return getattr(defaults, name)

    def transform_schema(self, schema: Schema) -> Schema:
        return self.estimator.transform_schema(schema)

    def _run_candidates(self, jobs: List[Tuple[Any, int, Dataset, Dataset]], parallelism: int,
                        keep_models: bool) -> Dict[Tuple[Any, int], Tuple[float, Optional[Model]]]:
        """Fit and score every (group, candidate index, train, validation) job."""
        larger = self.evaluator.is_larger_better()

        def run(job):
            group, index, train, validation = job
            started = time.time()
            model = self.estimator.fit(train, self.param_maps[index])
            score = self.evaluator.evaluate(model.transform(validation))
            self.logger.debug(f"{self.uid}: {group} candidate {index} scored {score:.6f} "
                              f"({'max' if larger else 'min'}) in {time.time() - started:.2f}s")
            return (group, index), (score, model if keep_models else None)

        if parallelism <= 1 or len(jobs) <= 1:
            return dict(run(job) for job in jobs)
        with ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix=f"{self.uid}-fit") as pool:
            return dict(pool.map(run, jobs))


class CrossValidator(_ValidatorParams, Estimator):
    """
    K-fold cross validation over a parameter grid.

    Rows get a fold number from a seeded permutation of their global
    positions, so the assignment only depends on the seed and the row order
    and every fold holds n // k or n // k + 1 rows whatever the partitioning.
    Every combination is fitted on k - 1 folds and scored on the held-out fold;
    fold scores are aggregated per combination and the winner is refitted on
    the full dataset. Unset settings fall back to the session's ``tuning``
    configuration.
    """

    uid_prefix = "cross_validator"
    params = (
        Param("num_folds", "number of folds", value_type=Annotated[StrictInt, Field(ge=2)]),
        Param("aggregation", "how fold scores are combined", value_type=Literal["mean", "median"]),
    )

    def _fit(self, dataset: Dataset) -> "CrossValidatorModel":
        defaults = dataset.session.config.tuning
        num_folds = self._setting("num_folds", defaults)
        seed = self._setting("seed", defaults)
        parallelism = self._setting("parallelism", defaults)
        aggregation = self._setting("aggregation", defaults)
        tie_break = self._setting("tie_break", defaults)
        keep_models = self.get("collect_sub_models")

        fold_col = f"_fold_{self.uid}"

        positions = _global_positions(dataset, seed, num_folds, self.uid)

        def assign_folds(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            out = df.copy()
            out[fold_col] = positions(partition, len(df)) % num_folds
            return out

        with_folds = dataset.map_partitions(assign_folds, dataset.schema.add(fold_col, ColumnType.NUMERIC),
                                            label=f"{self.uid}:folds").cache()
        self.logger.info(f"{self.uid}: {len(self.param_maps)} combinations x {num_folds} folds "
                         f"(parallelism {parallelism})")
        try:
            jobs = []
            for fold in range(num_folds):
                train = with_folds.filter(lambda df, f=fold: df[fold_col] != f).drop(fold_col)
                validation = with_folds.filter(lambda df, f=fold: df[fold_col] == f).drop(fold_col)
                jobs.extend((fold, index, train, validation) for index in range(len(self.param_maps)))
            results = self._run_candidates(jobs, parallelism, keep_models)
        finally:
            with_folds.uncache()

        fold_metrics = [[results[(fold, index)][0] for fold in range(num_folds)]
                        for index in range(len(self.param_maps))]
        avg_metrics = [_aggregate(scores, aggregation) for scores in fold_metrics]
        larger = self.evaluator.is_larger_better()
        best_index = select_best(avg_metrics, larger, tie_break)
        self.logger.info(f"{self.uid}: best combination {best_index} with {self.evaluator.metric} "
                         f"{avg_metrics[best_index]:.6f}")

        best_model = self.estimator.fit(dataset, self.param_maps[best_index])
        sub_models = None
        if keep_models:
            sub_models = [[results[(fold, index)][1] for index in range(len(self.param_maps))]
                          for fold in range(num_folds)]
        return CrossValidatorModel(best_model, avg_metrics, fold_metrics, self.param_maps, best_index,
                                   metric_name=self.evaluator.metric, larger_is_better=larger,
                                   sub_models=sub_models, uid=self.uid)


class TuningModel(Transformer):
    """Wraps the refitted best model; transform delegates to it."""

    def __init__(self, best_model: Transformer, param_maps: Sequence[ParamMap], best_index: int,
                 metric_name: str = "score", larger_is_better: bool = True, uid: Optional[str] = None):
        super().__init__(uid=uid)
        self.best_model = best_model
        self.param_maps = list(param_maps)
        self.best_index = best_index
        self.metric_name = metric_name
        self.larger_is_better = larger_is_better

    @property
    def best_params(self) -> ParamMap:
        return dict(self.param_maps[self.best_index])

    def transform_schema(self, schema: Schema) -> Schema:
        return self.best_model.transform_schema(schema)

    def _transform(self, dataset: Dataset) -> Dataset:
        return self.best_model.transform(dataset)

    def _param_columns(self) -> Dict[str, List[Any]]:
        keys = []
        for param_map in self.param_maps:
            keys.extend(key for key in param_map if key not in keys)
        return {f"{uid}.{name}": [param_map.get((uid, name)) for param_map in self.param_maps]
                for uid, name in keys}


class CrossValidatorModel(TuningModel):
    """Result of cross validation; metrics are in grid enumeration order."""

    uid_prefix = "cross_validator_model"

    def __init__(self, best_model: Transformer, avg_metrics: Sequence[float],
                 fold_metrics: Sequence[Sequence[float]], param_maps: Sequence[ParamMap], best_index: int,
                 metric_name: str = "score", larger_is_better: bool = True,
                 sub_models: Optional[List[List[Model]]] = None, uid: Optional[str] = None):
        super().__init__(best_model, param_maps, best_index, metric_name, larger_is_better, uid=uid)
        self.avg_metrics = list(avg_metrics)
        self.fold_metrics = [list(scores) for scores in fold_metrics]
        self.sub_models = sub_models

    def metrics_table(self) -> pd.DataFrame:
        """One row per combination: parameter values, aggregated metric and every fold score."""
        table = pd.DataFrame(self._param_columns(), index=range(len(self.param_maps)))
        table[self.metric_name] = self.avg_metrics
        for fold in range(len(self.fold_metrics[0]) if self.fold_metrics else 0):
            table[f"fold_{fold}"] = [scores[fold] for scores in self.fold_metrics]
        table["best"] = [index == self.best_index for index in range(len(self.param_maps))]
        return table


class TrainValidationSplit(_ValidatorParams, Estimator):
    """
    Single random train/validation split over a parameter grid.

    ``round(n * train_ratio)`` rows, at least one and at most n - 1, are used
    for training and the rest for validation.
    """

    uid_prefix = "train_validation_split"
    params = (
        Param("train_ratio", "fraction of rows used for training", 0.75, value_type=OpenFraction),
    )

    def _fit(self, dataset: Dataset) -> "TrainValidationSplitModel":
        defaults = dataset.session.config.tuning
        seed = self._setting("seed", defaults)
        parallelism = self._setting("parallelism", defaults)
        tie_break = self._setting("tie_break", defaults)
        ratio = self.get("train_ratio")
        keep_models = self.get("collect_sub_models")

        split_col = f"_train_{self.uid}"

        positions = _global_positions(dataset, seed, 2, self.uid)
        train_rows = min(max(int(round(positions.total * ratio)), 1), positions.total - 1)

        def assign_split(df: pd.DataFrame, partition: int) -> pd.DataFrame:
            out = df.copy()
            out[split_col] = positions(partition, len(df)) < train_rows
            return out

        with_split = dataset.map_partitions(assign_split, dataset.schema.add(split_col, ColumnType.BOOLEAN),
                                            label=f"{self.uid}:split").cache()
        try:
            train = with_split.filter(lambda df: df[split_col]).drop(split_col)
            validation = with_split.filter(lambda df: ~df[split_col]).drop(split_col)
            jobs = [("split", index, train, validation) for index in range(len(self.param_maps))]
            results = self._run_candidates(jobs, parallelism, keep_models)
        finally:
            with_split.uncache()

        metrics = [results[("split", index)][0] for index in range(len(self.param_maps))]
        larger = self.evaluator.is_larger_better()
        best_index = select_best(metrics, larger, tie_break)
        self.logger.info(f"{self.uid}: best combination {best_index} with {self.evaluator.metric} "
                         f"{metrics[best_index]:.6f}")

        best_model = self.estimator.fit(dataset, self.param_maps[best_index])
        sub_models = [results[("split", index)][1] for index in range(len(self.param_maps))] if keep_models else None
        return TrainValidationSplitModel(best_model, metrics, self.param_maps, best_index,
                                         metric_name=self.evaluator.metric, larger_is_better=larger,
                                         sub_models=sub_models, uid=self.uid)


class TrainValidationSplitModel(TuningModel):
    """Result of a train/validation split search."""

    uid_prefix = "train_validation_split_model"

    def __init__(self, best_model: Transformer, validation_metrics: Sequence[float],
                 param_maps: Sequence[ParamMap], best_index: int, metric_name: str = "score",
                 larger_is_better: bool = True, sub_models: Optional[List[Model]] = None,
                 uid: Optional[str] = None):
        super().__init__(best_model, param_maps, best_index, metric_name, larger_is_better, uid=uid)
        self.validation_metrics = list(validation_metrics)
        self.sub_models = sub_models

    def metrics_table(self) -> pd.DataFrame:
        table = pd.DataFrame(self._param_columns(), index=range(len(self.param_maps)))
        table[self.metric_name] = self.validation_metrics
        table["best"] = [index == self.best_index for index in range(len(self.param_maps))]
        return table


def tune(estimator: Estimator, param_maps: Optional[Sequence[ParamMap]], evaluator: Evaluator,
         dataset: Dataset, **settings) -> CrossValidatorModel:
    """Cross validate ``estimator`` over ``param_maps`` and return the fitted result."""
    return CrossValidator(estimator, param_maps, evaluator, **settings).fit(dataset)
