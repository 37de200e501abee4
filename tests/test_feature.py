"""Tests for feature transformers and estimators."""

import numpy as np
import pandas as pd
import pytest

from sparklet.core.errors import InvalidDataError, ParameterError, SchemaError
from sparklet.distributed.schema import ColumnType
from sparklet.ml.feature import (
    Binarizer, Bucketizer, ColumnExpression, IndexToString, MinMaxScaler, OneHotEncoder,
    StandardScaler, StringIndexer, VectorAssembler
)


def vectors(frame, column):
    return np.vstack(frame[column].to_list())


class TestStringIndexer:
    """Test label indexing."""

    def test_frequency_order(self, sex_data):
        """Test that the most frequent label gets index 0."""
        model = StringIndexer(input_col="sex", output_col="sex_index").fit(sex_data)
        result = model.transform(sex_data).collect()

        assert model.labels == ["male", "female"]
        assert result["sex_index"].tolist() == [0.0, 1.0, 0.0]

    def test_ties_broken_alphabetically(self, session):
        """Test that equally frequent labels are ordered by value."""
        dataset = session.create_dataset({"c": ["b", "a", "b", "a", "c"]})
        model = StringIndexer(input_col="c", output_col="i").fit(dataset)

        assert model.labels == ["a", "b", "c"]

    @pytest.mark.parametrize("order,expected", [
        ("frequency_asc", ["c", "a", "b"]),
        ("alphabet_asc", ["a", "b", "c"]),
        ("alphabet_desc", ["c", "b", "a"]),
    ])
    def test_other_orders(self, session, order, expected):
        """Test the alternative label orderings."""
        dataset = session.create_dataset({"c": ["b", "a", "b", "a", "c", "b"]})
        model = StringIndexer(input_col="c", output_col="i", string_order_type=order).fit(dataset)

        assert model.labels == expected

    def test_numeric_input_indexed_as_strings(self, session):
        """Test that numeric values are indexed by their string form."""
        dataset = session.create_dataset({"n": [1, 2, 2]})
        model = StringIndexer(input_col="n", output_col="i").fit(dataset)

        assert model.labels == ["2", "1"]
        assert model.transform(dataset).collect()["i"].tolist() == [1.0, 0.0, 0.0]

    def test_unseen_label_error(self, session, sex_data):
        """Test that unseen labels fail the job by default."""
        model = StringIndexer(input_col="sex", output_col="i").fit(sex_data)
        other = session.create_dataset({"sex": ["male", "unknown"], "age": [1.0, 2.0], "label": [0.0, 1.0]})

        with pytest.raises(InvalidDataError, match="unseen label 'unknown'"):
            model.transform(other).collect()

    def test_unseen_label_skip_and_keep(self, session, sex_data):
        """Test the skip and keep policies for unseen labels."""
        model = StringIndexer(input_col="sex", output_col="i").fit(sex_data)
        other = session.create_dataset({"sex": ["male", "unknown", "female"]}, num_partitions=1)

        skipped = model.set(handle_invalid="skip").transform(other).collect()
        kept = model.set(handle_invalid="keep").transform(other).collect()

        assert skipped["i"].tolist() == [0.0, 1.0]
        assert kept["i"].tolist() == [0.0, 2.0, 1.0]

    def test_output_column_exists(self, sex_data):
        """Test that writing over an existing column is a schema error."""
        with pytest.raises(SchemaError, match="already exists"):
            StringIndexer(input_col="sex", output_col="age").fit(sex_data)

    def test_index_to_string(self, sex_data):
        """Test mapping indices back to labels."""
        model = StringIndexer(input_col="sex", output_col="i").fit(sex_data)
        indexed = model.transform(sex_data)
        restored = IndexToString(input_col="i", output_col="sex_again", labels=model.labels).transform(indexed)

        assert restored.collect()["sex_again"].tolist() == ["male", "female", "male"]
        assert restored.schema["sex_again"] == ColumnType.STRING

    def test_index_to_string_invalid_index(self, session):
        """Test that out-of-range indices are rejected."""
        dataset = session.create_dataset({"i": [0.0, 5.0]})
        stage = IndexToString(input_col="i", output_col="s", labels=["a", "b"])

        with pytest.raises(InvalidDataError, match="not a valid label index"):
            stage.transform(dataset).collect()


class TestOneHotEncoder:
    """Test one-hot encoding."""

    def setup_method(self):
        """Set up test fixtures."""
        self.indexer = StringIndexer(input_col="sex", output_col="sex_index")

    def test_encoding_without_drop_last(self, sex_data):
        """Test full-width one-hot vectors."""
        indexed = self.indexer.fit(sex_data).transform(sex_data)
        model = OneHotEncoder(input_col="sex_index", output_col="sex_vec", drop_last=False).fit(indexed)
        result = model.transform(indexed).collect()

        assert model.category_size == 2
        np.testing.assert_array_equal(vectors(result, "sex_vec"), [[1.0, 0.0], [0.0, 1.0], [1.0, 0.0]])

    def test_drop_last_by_default(self, sex_data):
        """Test that the last category becomes the all-zero vector."""
        indexed = self.indexer.fit(sex_data).transform(sex_data)
        model = OneHotEncoder(input_col="sex_index", output_col="sex_vec").fit(indexed)
        result = model.transform(indexed).collect()

        assert model.vector_size == 1
        np.testing.assert_array_equal(vectors(result, "sex_vec"), [[1.0], [0.0], [1.0]])

    def test_invalid_category(self, session):
        """Test that indices beyond the fitted size are rejected unless kept."""
        train = session.create_dataset({"i": [0.0, 1.0]})
        test = session.create_dataset({"i": [0.0, 3.0]}, num_partitions=1)
        model = OneHotEncoder(input_col="i", output_col="v", drop_last=False).fit(train)

        with pytest.raises(InvalidDataError, match="not a category index"):
            model.transform(test).collect()

        kept = model.set(handle_invalid="keep").transform(test).collect()
        np.testing.assert_array_equal(vectors(kept, "v"), [[1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])

    def test_requires_numeric_input(self, sex_data):
        """Test that string input is a schema error."""
        with pytest.raises(SchemaError, match="must be of type numeric"):
            OneHotEncoder(input_col="sex", output_col="v").fit(sex_data)


class TestVectorAssembler:
    """Test vector assembly."""

    def test_concatenates_numeric_and_vector_columns(self, session):
        """Test that inputs are concatenated in order."""
        dataset = session.create_dataset({"a": [1.0, 2.0], "b": [3.0, 4.0]}).with_column(
            "v", lambda df: [[x, -x] for x in df["a"]], ColumnType.VECTOR
        )
        result = VectorAssembler(input_cols=["b", "v"], output_col="features").transform(dataset).collect()

        np.testing.assert_array_equal(vectors(result, "features"), [[3.0, 1.0, -1.0], [4.0, 2.0, -2.0]])

    def test_missing_values(self, session):
        """Test the policies for rows with missing values."""
        dataset = session.create_dataset({"a": [1.0, np.nan, 3.0], "b": [1.0, 2.0, 3.0]}, num_partitions=1)
        stage = VectorAssembler(input_cols=["a", "b"], output_col="f")

        with pytest.raises(InvalidDataError, match="missing values"):
            stage.transform(dataset).collect()

        skipped = stage.set(handle_invalid="skip").transform(dataset).collect()
        kept = stage.set(handle_invalid="keep").transform(dataset).collect()
        assert len(skipped) == 2
        assert np.isnan(kept["f"].iloc[1][0])

    def test_rejects_string_columns(self, sex_data):
        """Test that string columns cannot be assembled."""
        with pytest.raises(SchemaError):
            VectorAssembler(input_cols=["age", "sex"], output_col="f").transform(sex_data)


class TestScalers:
    """Test standard and min-max scaling."""

    def test_standard_scaler_default_scales_only(self, session):
        """Test that by default values are divided by the population standard deviation."""
        values = np.array([1.0, 2.0, 3.0, 4.0, 10.0])
        dataset = session.create_dataset({"x": values}, num_partitions=3)
        model = StandardScaler(input_col="x", output_col="scaled").fit(dataset)
        scaled = vectors(model.transform(dataset).collect(), "scaled")[:, 0]

        np.testing.assert_allclose(model.mean, [values.mean()])
        np.testing.assert_allclose(model.std, [values.std(ddof=0)])
        np.testing.assert_allclose(scaled, values / values.std(ddof=0))

    def test_standard_scaler_with_mean(self, session):
        """Test that centered and scaled output has mean 0 and unit population variance."""
        rng = np.random.default_rng(3)
        values = rng.normal(5.0, 2.0, size=(50, 2))
        dataset = session.create_dataset(pd.DataFrame({"x": pd.Series(list(values), dtype=object)}),
                                         num_partitions=4)
        scaled = StandardScaler(input_col="x", output_col="s", with_mean=True).fit_transform(dataset).collect()
        matrix = vectors(scaled, "s")

        np.testing.assert_allclose(matrix.mean(axis=0), 0.0, atol=1e-12)
        np.testing.assert_allclose(matrix.std(axis=0, ddof=0), 1.0)

    def test_standard_scaler_sample_std(self, session):
        """Test the sample standard deviation option."""
        values = np.array([2.0, 4.0, 6.0])
        dataset = session.create_dataset({"x": values}, num_partitions=2)
        model = StandardScaler(input_col="x", output_col="s", ddof=1).fit(dataset)

        np.testing.assert_allclose(model.std, [values.std(ddof=1)])

    def test_standard_scaler_constant_feature(self, session):
        """Test that zero-variance features scale to 0."""
        dataset = session.create_dataset({"x": [5.0, 5.0, 5.0]})
        scaled = StandardScaler(input_col="x", output_col="s").fit_transform(dataset).collect()

        np.testing.assert_array_equal(vectors(scaled, "s")[:, 0], [0.0, 0.0, 0.0])

    def test_standard_scaler_empty_dataset(self, session):
        """Test that fitting on no rows is rejected."""
        dataset = session.create_dataset({"x": [1.0]}).filter("x > 5")
        with pytest.raises(InvalidDataError, match="empty dataset"):
            StandardScaler(input_col="x", output_col="s").fit(dataset)

    def test_min_max_scaler(self, session):
        """Test rescaling to [0, 1] and constant features mapping to 0.5."""
        dataset = session.create_dataset({"x": [1.0, 3.0, 5.0], "c": [2.0, 2.0, 2.0]}, num_partitions=2)
        assembled = VectorAssembler(input_cols=["x", "c"], output_col="f").transform(dataset)
        result = MinMaxScaler(input_col="f", output_col="scaled").fit_transform(assembled).collect()

        np.testing.assert_allclose(vectors(result, "scaled"), [[0.0, 0.5], [0.5, 0.5], [1.0, 0.5]])

    def test_min_max_scaler_custom_range(self, session):
        """Test rescaling to a custom range."""
        dataset = session.create_dataset({"x": [0.0, 10.0]})
        result = MinMaxScaler(input_col="x", output_col="s", min=-1.0, max=1.0).fit_transform(dataset).collect()

        np.testing.assert_allclose(vectors(result, "s")[:, 0], [-1.0, 1.0])

    def test_min_max_scaler_invalid_range(self, session):
        """Test that min must be below max."""
        dataset = session.create_dataset({"x": [0.0, 10.0]})
        with pytest.raises(SchemaError, match="must be below max"):
            MinMaxScaler(input_col="x", output_col="s", min=1.0, max=1.0).fit(dataset)


class TestThresholdsAndBuckets:
    """Test Binarizer, Bucketizer and ColumnExpression."""

    def test_binarizer(self, session):
        """Test that only values strictly above the threshold map to 1."""
        dataset = session.create_dataset({"x": [0.2, 0.5, 0.9]})
        result = Binarizer(input_col="x", output_col="b", threshold=0.5).transform(dataset).collect()

        assert result["b"].tolist() == [0.0, 0.0, 1.0]

    def test_bucketizer(self, session):
        """Test bucket assignment with an inclusive last bucket."""
        dataset = session.create_dataset({"x": [0.0, 9.99, 10.0, 25.0, 30.0]})
        stage = Bucketizer(input_col="x", output_col="bucket", splits=[0, 10, 20, 30])

        assert stage.transform(dataset).collect()["bucket"].tolist() == [0.0, 0.0, 1.0, 2.0, 2.0]

    def test_bucketizer_invalid_values(self, session):
        """Test the policies for values outside the splits."""
        dataset = session.create_dataset({"x": [5.0, 35.0, np.nan]}, num_partitions=1)
        stage = Bucketizer(input_col="x", output_col="bucket", splits=[0, 10, 20, 30])

        with pytest.raises(InvalidDataError, match="outside the splits"):
            stage.transform(dataset).collect()

        assert stage.set(handle_invalid="skip").transform(dataset).collect()["bucket"].tolist() == [0.0]
        assert stage.set(handle_invalid="keep").transform(dataset).collect()["bucket"].tolist() == [0.0, 3.0, 3.0]

    def test_bucketizer_requires_three_splits(self):
        """Test that fewer than three splits are rejected."""
        with pytest.raises(ParameterError):
            Bucketizer(input_col="x", output_col="b", splits=[0, 1])

    def test_column_expression(self, sex_data):
        """Test computing a column from an expression."""
        stage = ColumnExpression(expression="age * 2 + label", output_col="score")
        result = stage.transform(sex_data)

        assert result.schema["score"] == ColumnType.NUMERIC
        assert result.collect()["score"].tolist() == [44.0, 77.0, 52.0]

    def test_column_expression_unknown_column(self, sex_data):
        """Test that expressions over missing columns fail at schema time."""
        stage = ColumnExpression(expression="height * 2", output_col="score")
        with pytest.raises(SchemaError, match="cannot evaluate"):
            stage.transform(sex_data)
