"""Tests for parameter grids, cross validation and train/validation split."""

import math

import numpy as np
import pytest

from sparklet.core.errors import InvalidDataError, ParameterError
from sparklet.core.session import Session
from sparklet.ml import (
    BinaryClassificationEvaluator, CrossValidator, CrossValidatorModel, LinearRegression,
    LogisticRegression, ParamGridBuilder, Pipeline, PipelineModel, RegressionEvaluator,
    TrainValidationSplit, VectorAssembler, tune
)
from sparklet.ml.tuning import select_best


def regression_setup():
    assembler = VectorAssembler(input_cols=["x1", "x2"], output_col="features")
    lr = LinearRegression(max_iter=200)
    return Pipeline([assembler, lr]), lr


class TestParamGridBuilder:
    """Test grid construction."""

    def test_cross_product_order(self):
        """Test that the first added parameter varies slowest."""
        lr = LogisticRegression()
        grid = (ParamGridBuilder()
                .add_grid(lr, "reg_param", [0.0, 0.1])
                .add_grid(lr, "elastic_net_param", [0.0, 1.0])
                .build())

        assert [(m[(lr.uid, "reg_param")], m[(lr.uid, "elastic_net_param")]) for m in grid] == [
            (0.0, 0.0), (0.0, 1.0), (0.1, 0.0), (0.1, 1.0)
        ]

    def test_base_on(self):
        """Test that fixed values appear in every combination."""
        lr = LogisticRegression()
        grid = ParamGridBuilder().add_grid(lr, "reg_param", [0.0, 0.1]).base_on(lr, max_iter=50).build()

        assert len(grid) == 2
        assert all(m[(lr.uid, "max_iter")] == 50 for m in grid)

    def test_empty_builder(self):
        """Test that an empty builder yields one empty combination."""
        assert ParamGridBuilder().build() == [{}]

    def test_unknown_parameter(self):
        """Test that grid parameters must exist on the stage."""
        with pytest.raises(ParameterError, match="has no parameter 'depth'"):
            ParamGridBuilder().add_grid(LogisticRegression(), "depth", [1, 2])

    def test_invalid_values(self):
        """Test that grid values are validated up front."""
        with pytest.raises(ParameterError):
            ParamGridBuilder().add_grid(LogisticRegression(), "reg_param", [0.1, -1.0])
        with pytest.raises(ParameterError, match="no values"):
            ParamGridBuilder().add_grid(LogisticRegression(), "reg_param", [])


class TestSelectBest:
    """Test winner selection."""

    def test_larger_is_better(self):
        """Test selection of the maximum with first and last tie breaking."""
        scores = [0.5, 0.9, 0.9, 0.1]
        assert select_best(scores, True) == 1
        assert select_best(scores, True, "last") == 2

    def test_smaller_is_better(self):
        """Test selection of the minimum."""
        assert select_best([3.0, 1.0, 2.0, 1.0], False) == 1
        assert select_best([3.0, 1.0, 2.0, 1.0], False, "last") == 3

    def test_nan_never_wins(self):
        """Test that NaN scores are skipped."""
        assert select_best([math.nan, 0.2, 0.1], True) == 1
        assert select_best([math.nan, 0.2, 0.1], False) == 2


class TestCrossValidator:
    """Test k-fold cross validation."""

    def test_grid_over_ten_folds(self, session, regression_frame):
        """Test a 2 x 2 x 2 grid evaluated on 10 folds."""
        pipeline, lr = regression_setup()
        grid = (ParamGridBuilder()
                .add_grid(lr, "reg_param", [0.0, 0.5])
                .add_grid(lr, "elastic_net_param", [0.0, 0.5])
                .add_grid(lr, "fit_intercept", [True, False])
                .build())
        dataset = session.create_dataset(regression_frame, num_partitions=2)

        model = CrossValidator(pipeline, grid, RegressionEvaluator(), num_folds=10, seed=1).fit(dataset)

        assert isinstance(model, CrossValidatorModel)
        assert len(model.avg_metrics) == 8
        assert all(len(scores) == 10 for scores in model.fold_metrics)
        np.testing.assert_allclose(model.avg_metrics, [np.mean(s) for s in model.fold_metrics])
        assert model.best_index == int(np.argmin(model.avg_metrics))
        assert model.best_params == grid[model.best_index]
        assert model.best_params[(lr.uid, "fit_intercept")] is True
        assert isinstance(model.best_model, PipelineModel)

        table = model.metrics_table()
        assert len(table) == 8
        assert f"{lr.uid}.reg_param" in table.columns
        assert {"rmse", "fold_0", "fold_9", "best"} <= set(table.columns)
        assert table["best"].sum() == 1
        assert bool(table.loc[model.best_index, "best"])

    def test_same_seed_is_deterministic(self, session, regression_frame):
        """Test that fold assignment only depends on the seed and row order."""
        pipeline, lr = regression_setup()
        grid = ParamGridBuilder().add_grid(lr, "reg_param", [0.0, 0.1]).build()
        dataset = session.create_dataset(regression_frame, num_partitions=3)

        first = CrossValidator(pipeline, grid, RegressionEvaluator(), num_folds=4, seed=9).fit(dataset)
        second = CrossValidator(pipeline, grid, RegressionEvaluator(), num_folds=4, seed=9).fit(dataset)
        other = CrossValidator(pipeline, grid, RegressionEvaluator(), num_folds=4, seed=10).fit(dataset)

        assert first.fold_metrics == second.fold_metrics
        assert first.fold_metrics != other.fold_metrics

    def test_partitions_smaller_than_fold_count(self, session, regression_frame):
        """Test that every fold gets rows when each partition holds fewer rows than there are folds."""
        pipeline, _ = regression_setup()
        dataset = session.create_dataset(regression_frame.head(20), num_partitions=4)

        model = CrossValidator(pipeline, None, RegressionEvaluator(), num_folds=10, seed=5).fit(dataset)

        assert len(model.fold_metrics[0]) == 10
        assert all(np.isfinite(score) for score in model.fold_metrics[0])

    def test_fold_assignment_ignores_partitioning(self, session, regression_frame):
        """Test that the same rows in different partitionings get the same folds."""
        pipeline, lr = regression_setup()
        grid = ParamGridBuilder().add_grid(lr, "reg_param", [0.0, 0.1]).build()
        two = session.create_dataset(regression_frame, num_partitions=2)
        five = session.create_dataset(regression_frame, num_partitions=5)

        first = CrossValidator(pipeline, grid, RegressionEvaluator(), num_folds=4, seed=3).fit(two)
        second = CrossValidator(pipeline, grid, RegressionEvaluator(), num_folds=4, seed=3).fit(five)

        np.testing.assert_allclose(first.fold_metrics, second.fold_metrics)

    def test_fewer_rows_than_folds(self, session, regression_frame):
        """Test that a dataset smaller than the fold count is rejected."""
        pipeline, _ = regression_setup()
        dataset = session.create_dataset(regression_frame.head(3), num_partitions=2)

        with pytest.raises(InvalidDataError, match="3 rows cannot be split into 4 groups"):
            CrossValidator(pipeline, None, RegressionEvaluator(), num_folds=4).fit(dataset)

    def test_parallel_fits_match_sequential(self, session, regression_frame):
        """Test that concurrent candidate fits give the same metrics."""
        pipeline, lr = regression_setup()
        grid = ParamGridBuilder().add_grid(lr, "reg_param", [0.0, 0.1, 1.0]).build()
        dataset = session.create_dataset(regression_frame)

        sequential = CrossValidator(pipeline, grid, RegressionEvaluator(), num_folds=3, seed=2,
                                    parallelism=1).fit(dataset)
        parallel = CrossValidator(pipeline, grid, RegressionEvaluator(), num_folds=3, seed=2,
                                  parallelism=3).fit(dataset)

        np.testing.assert_allclose(parallel.fold_metrics, sequential.fold_metrics)

    def test_session_defaults(self, regression_frame):
        """Test that unset settings come from the session's tuning configuration."""
        pipeline, lr = regression_setup()
        config = {"execution": {"max_workers": 2}, "tuning": {"num_folds": 4, "aggregation": "median"}}
        with Session(config) as session:
            dataset = session.create_dataset(regression_frame)
            model = CrossValidator(pipeline, None, RegressionEvaluator()).fit(dataset)

        assert len(model.fold_metrics[0]) == 4
        assert model.avg_metrics == [pytest.approx(float(np.median(model.fold_metrics[0])))]

    def test_empty_grid(self, session, regression_frame):
        """Test that no grid means a single run with the estimator's own params."""
        pipeline, _ = regression_setup()
        dataset = session.create_dataset(regression_frame)
        model = CrossValidator(pipeline, [], RegressionEvaluator(), num_folds=3).fit(dataset)

        assert len(model.avg_metrics) == 1
        assert model.best_index == 0
        assert model.best_params == {}

    def test_grid_for_foreign_stage(self):
        """Test that grid entries must address a stage of the estimator."""
        pipeline, _ = regression_setup()
        stranger = LinearRegression()
        grid = ParamGridBuilder().add_grid(stranger, "reg_param", [0.1]).build()

        with pytest.raises(ParameterError, match="does not belong"):
            CrossValidator(pipeline, grid, RegressionEvaluator())

    def test_sub_models(self, session, regression_frame):
        """Test that candidate models are kept on request."""
        pipeline, lr = regression_setup()
        grid = ParamGridBuilder().add_grid(lr, "reg_param", [0.0, 0.1]).build()
        dataset = session.create_dataset(regression_frame)

        model = CrossValidator(pipeline, grid, RegressionEvaluator(), num_folds=3,
                               collect_sub_models=True).fit(dataset)

        assert len(model.sub_models) == 3
        assert all(len(fold) == 2 for fold in model.sub_models)
        assert model.sub_models[0][1].stages[1].get("reg_param") == 0.1

    def test_fold_column_released(self, session, regression_frame):
        """Test that the fold column is neither cached nor exposed after fitting."""
        pipeline, _ = regression_setup()
        dataset = session.create_dataset(regression_frame)
        model = CrossValidator(pipeline, None, RegressionEvaluator(), num_folds=3).fit(dataset)

        output = model.transform(dataset)
        assert not any(name.startswith("_fold_") for name in output.schema.names)
        assert session.cache_manager.get_statistics()["memory_blocks"] == 0

    def test_model_transform_delegates(self, session, binary_frame):
        """Test that the tuning result transforms like its best model."""
        dataset = session.create_dataset(binary_frame, num_partitions=3)
        pipeline = Pipeline([VectorAssembler(input_cols=["x1", "x2"], output_col="features"),
                             LogisticRegression()])
        lr = pipeline.stages[1]
        grid = ParamGridBuilder().add_grid(lr, "reg_param", [0.01, 10.0]).build()

        model = tune(pipeline, grid, BinaryClassificationEvaluator(), dataset, num_folds=3, seed=4)

        assert model.best_model.uid == pipeline.uid
        assert model.metric_name == "area_under_roc"
        assert model.larger_is_better
        assert "probability" in model.transform(dataset).schema.names

    def test_invalid_settings(self):
        """Test validation of tuning settings."""
        pipeline, _ = regression_setup()
        with pytest.raises(ParameterError):
            CrossValidator(pipeline, None, RegressionEvaluator(), num_folds=1)
        with pytest.raises(ParameterError):
            CrossValidator(pipeline, None, RegressionEvaluator(), tie_break="random")
        with pytest.raises(ParameterError, match="is not an estimator"):
            CrossValidator(VectorAssembler(input_cols=["a"], output_col="b"), None, RegressionEvaluator())


class TestTrainValidationSplit:
    """Test single-split model selection."""

    def test_split_selection(self, session, regression_frame):
        """Test that one metric per combination is reported."""
        pipeline, lr = regression_setup()
        grid = ParamGridBuilder().add_grid(lr, "fit_intercept", [True, False]).build()
        dataset = session.create_dataset(regression_frame, num_partitions=2)

        model = TrainValidationSplit(pipeline, grid, RegressionEvaluator(metric_name="r2"),
                                     train_ratio=0.8, seed=3).fit(dataset)

        assert len(model.validation_metrics) == 2
        assert model.best_index == 0
        assert model.validation_metrics[0] > model.validation_metrics[1]

        table = model.metrics_table()
        assert list(table["r2"]) == model.validation_metrics
        assert list(table["best"]) == [True, False]

    def test_small_dataset_keeps_both_sides(self, session, regression_frame):
        """Test that a few rows spread over many partitions still give a validation set."""
        pipeline, _ = regression_setup()
        dataset = session.create_dataset(regression_frame.head(6), num_partitions=6)

        model = TrainValidationSplit(pipeline, None, RegressionEvaluator(), train_ratio=0.9, seed=1).fit(dataset)

        assert np.isfinite(model.validation_metrics[0])

    def test_invalid_ratio(self):
        """Test that the train ratio must lie strictly between 0 and 1."""
        pipeline, _ = regression_setup()
        with pytest.raises(ParameterError):
            TrainValidationSplit(pipeline, None, RegressionEvaluator(), train_ratio=1.0)
