"""Tests for pipelines and pipeline models."""

import numpy as np
import pytest

from sparklet.core.errors import ParameterError, SchemaError
from sparklet.core.interfaces import StageKind, Transformer
from sparklet.distributed.schema import Schema
from sparklet.ml import (
    Binarizer, LogisticRegression, OneHotEncoder, Pipeline, PipelineModel, StandardScaler,
    StringIndexer, VectorAssembler
)


class CountingTransformer(Transformer):
    """Identity transformer recording how often it is applied."""

    uid_prefix = "counting"

    def __init__(self, uid=None):
        super().__init__(uid=uid)
        self.applied = 0

    def transform_schema(self, schema: Schema) -> Schema:
        return schema

    def _transform(self, dataset):
        self.applied += 1
        return dataset


def sex_pipeline(**scaler_params):
    return Pipeline([
        StringIndexer(input_col="sex", output_col="sex_index"),
        OneHotEncoder(input_col="sex_index", output_col="sex_vec", drop_last=False),
        VectorAssembler(input_cols=["sex_vec", "age"], output_col="features"),
        StandardScaler(input_col="features", output_col="scaled", **scaler_params),
    ])


class TestPipelineFit:
    """Test fitting pipelines."""

    def test_end_to_end(self, sex_data):
        """Test indexing, encoding, assembling and scaling in one pipeline."""
        model = sex_pipeline(with_mean=True).fit(sex_data)
        result = model.transform(sex_data).collect()

        assert result["sex_index"].tolist() == [0.0, 1.0, 0.0]
        np.testing.assert_array_equal(np.vstack(result["sex_vec"].to_list()),
                                      [[1.0, 0.0], [0.0, 1.0], [1.0, 0.0]])
        np.testing.assert_array_equal(np.vstack(result["features"].to_list())[:, 2], [22.0, 38.0, 26.0])

        scaled = np.vstack(result["scaled"].to_list())
        np.testing.assert_allclose(scaled.mean(axis=0), 0.0, atol=1e-12)
        np.testing.assert_allclose(scaled.std(axis=0, ddof=0), 1.0)

    def test_model_contains_only_transformers(self, sex_data):
        """Test that every estimator is replaced by its fitted model."""
        pipeline = sex_pipeline()
        model = pipeline.fit(sex_data)

        assert isinstance(model, PipelineModel)
        assert model.uid == pipeline.uid
        assert all(stage.kind == StageKind.TRANSFORMER for stage in model.stages)
        assert [s.uid for s in model.stages] == [s.uid for s in pipeline.stages]
        assert model.stages[2] is pipeline.stages[2]

    def test_schema_errors_fail_before_any_job(self, session, sex_data):
        """Test that a missing column fails the fit before computation starts."""
        pipeline = Pipeline([
            StringIndexer(input_col="sex", output_col="sex_index"),
            VectorAssembler(input_cols=["sex_index", "height"], output_col="features"),
        ])

        with pytest.raises(SchemaError, match="'height' does not exist"):
            pipeline.fit(sex_data)
        assert session.scheduler.get_statistics()["jobs_submitted"] == 0

    def test_stages_after_last_estimator_not_applied(self, sex_data):
        """Test that trailing transformers are not run during fit."""
        trailing = CountingTransformer()
        leading = CountingTransformer()
        pipeline = Pipeline([leading, StringIndexer(input_col="sex", output_col="i"), trailing])

        model = pipeline.fit(sex_data)

        assert leading.applied == 1
        assert trailing.applied == 0
        model.transform(sex_data)
        assert trailing.applied == 1

    def test_fit_with_param_map(self, sex_data):
        """Test that fit-time parameter maps reach the addressed stage only."""
        pipeline = sex_pipeline()
        scaler = pipeline.stages[3]

        model = pipeline.fit(sex_data, {(scaler.uid, "with_mean"): True})

        assert model.stages[3].get("with_mean") is True
        assert scaler.get("with_mean") is False

    def test_empty_pipeline(self, sex_data):
        """Test that an empty pipeline fits to an identity model."""
        model = Pipeline().fit(sex_data)

        assert model.stages == ()
        assert model.transform(sex_data).schema == sex_data.schema

    def test_nested_pipeline(self, sex_data):
        """Test that a pipeline can be a stage of another pipeline."""
        inner = Pipeline([StringIndexer(input_col="sex", output_col="sex_index")])
        outer = Pipeline([inner, Binarizer(input_col="sex_index", output_col="is_female", threshold=0.5)])

        result = outer.fit(sex_data).transform(sex_data).collect()

        assert result["is_female"].tolist() == [0.0, 1.0, 0.0]

    def test_classification_pipeline(self, session, binary_frame):
        """Test a pipeline ending in logistic regression."""
        dataset = session.create_dataset(binary_frame, num_partitions=3)
        pipeline = Pipeline([
            VectorAssembler(input_cols=["x1", "x2"], output_col="features"),
            LogisticRegression(),
        ])

        result = pipeline.fit(dataset).transform(dataset).collect()
        accuracy = (result["prediction"] == result["label"]).mean()

        assert accuracy > 0.9

    def test_transform_schema_without_data(self, sex_data):
        """Test computing a pipeline's output schema."""
        schema = sex_pipeline().transform_schema(sex_data.schema)

        assert schema.names[-4:] == ["sex_index", "sex_vec", "features", "scaled"]


class TestPipelineConstruction:
    """Test building and copying pipelines."""

    def test_from_config(self, sex_data):
        """Test building a pipeline from registered stage type tags."""
        pipeline = Pipeline.from_config([
            {"type": "string_indexer", "params": {"input_col": "sex", "output_col": "sex_index"}},
            {"type": "one_hot_encoder", "params": {"input_col": "sex_index", "output_col": "sex_vec"}},
        ])

        assert [type(s) for s in pipeline.stages] == [StringIndexer, OneHotEncoder]
        assert pipeline.fit(sex_data).transform(sex_data).count() == 3

    def test_from_config_unknown_type(self):
        """Test that unknown stage types are rejected."""
        with pytest.raises(ParameterError, match="Unknown stage type"):
            Pipeline.from_config([{"type": "no_such_stage"}])

    def test_from_config_malformed(self):
        """Test that specifications without a type are rejected."""
        with pytest.raises(ParameterError, match="'type' key"):
            Pipeline.from_config([{"params": {}}])

    def test_non_stage_rejected(self):
        """Test that only pipeline stages are accepted."""
        with pytest.raises(ParameterError, match="not a pipeline stage"):
            Pipeline([StringIndexer(input_col="a", output_col="b"), "not a stage"])

    def test_duplicate_stage_rejected(self):
        """Test that one stage instance cannot appear twice."""
        indexer = StringIndexer(input_col="a", output_col="b")
        with pytest.raises(ParameterError, match="more than once"):
            Pipeline([indexer, indexer])

    def test_pipeline_model_requires_transformers(self):
        """Test that pipeline models cannot hold estimators."""
        with pytest.raises(ParameterError, match="not a transformer"):
            PipelineModel([StringIndexer(input_col="a", output_col="b")])

    def test_append_returns_new_pipeline(self):
        """Test that append leaves the original pipeline unchanged."""
        pipeline = Pipeline([StringIndexer(input_col="a", output_col="b")])
        extended = pipeline.append(Binarizer(input_col="b", output_col="c"))

        assert len(pipeline.stages) == 1
        assert len(extended.stages) == 2
        assert extended.uid != pipeline.uid

    def test_copy_applies_param_map_to_stages(self):
        """Test that copy forwards parameter maps to nested stages."""
        pipeline = sex_pipeline()
        indexer = pipeline.stages[0]

        copied = pipeline.copy({(indexer.uid, "handle_invalid"): "keep"})

        assert copied.uid == pipeline.uid
        assert copied.stages[0].get("handle_invalid") == "keep"
        assert indexer.get("handle_invalid") == "error"
        assert copied.stages[0] is not indexer
