"""Tests for lazy partitioned datasets."""

import numpy as np
import pandas as pd
import pytest

from sparklet.core.errors import ParameterError, SchemaError, SessionError
from sparklet.core.session import Session
from sparklet.distributed.lineage import OpKind
from sparklet.distributed.schema import ColumnType


class TestSources:
    """Test dataset constructors."""

    def test_create_dataset_partitions(self, session):
        """Test that rows are split into contiguous partitions."""
        dataset = session.create_dataset(pd.DataFrame({"x": range(10)}), num_partitions=3)

        assert dataset.num_partitions == 3
        assert dataset.partition_sizes() == [4, 3, 3]
        assert dataset.collect()["x"].tolist() == list(range(10))

    def test_default_parallelism(self, session):
        """Test that the session's default parallelism is used."""
        assert session.create_dataset({"x": [1, 2, 3]}).num_partitions == 2

    def test_create_from_records(self, session):
        """Test creating a dataset from a list of row dicts."""
        dataset = session.create_dataset([{"a": 1, "b": "x"}, {"a": 2, "b": "y"}], num_partitions=1)
        assert dataset.schema.to_dict() == {"a": "numeric", "b": "string"}

    def test_range(self, session):
        """Test the integer range source."""
        dataset = session.range(5, num_partitions=2)

        assert dataset.columns == ["id"]
        assert dataset.collect()["id"].tolist() == [1, 2, 3, 4, 5]
        assert session.range(3, start=0).collect()["id"].tolist() == [0, 1, 2]

    def test_invalid_partition_count(self, session):
        """Test that zero partitions is rejected."""
        with pytest.raises(ParameterError):
            session.create_dataset({"x": [1]}, num_partitions=0)
        with pytest.raises(ParameterError):
            session.range(-1)

    def test_read_csv(self, session, tmp_path):
        """Test reading a CSV file."""
        path = tmp_path / "data.csv"
        pd.DataFrame({"a": [1, 2, 3], "b": ["x", "y", "z"]}).to_csv(path, index=False)

        dataset = session.read_csv(path)

        assert dataset.num_partitions == 1
        assert dataset.collect()["b"].tolist() == ["x", "y", "z"]

    def test_parquet_round_trip(self, session, tmp_path):
        """Test writing and reading parquet partitions."""
        dataset = session.create_dataset({"a": [1.0, 2.0, 3.0, 4.0], "s": list("abcd")}, num_partitions=2)
        files = dataset.write_parquet(tmp_path / "out")

        assert len(files) == 2
        reread = session.read_parquet(tmp_path / "out")
        assert reread.num_partitions == 2
        assert reread.schema.to_dict() == {"a": "numeric", "s": "string"}
        assert reread.collect()["a"].tolist() == [1.0, 2.0, 3.0, 4.0]

    def test_read_parquet_missing(self, session, tmp_path):
        """Test reading a directory without parquet files."""
        with pytest.raises(Exception, match="No parquet files"):
            session.read_parquet(tmp_path)


class TestNarrowTransformations:
    """Test transformations that keep partitioning."""

    def test_transformations_are_lazy(self, session):
        """Test that no job runs until an action is called."""
        dataset = session.range(10, num_partitions=2)
        before = session.scheduler.get_statistics()["jobs_submitted"]

        dataset.filter(lambda df: df["id"] > 3).with_column("twice", lambda df: df["id"] * 2)

        assert session.scheduler.get_statistics()["jobs_submitted"] == before

    def test_map_partitions_receives_index(self, session):
        """Test that the partition index is passed to the function."""
        dataset = session.range(6, num_partitions=3)
        tagged = dataset.map_partitions(lambda df, i: df.assign(part=i))

        assert tagged.collect()["part"].tolist() == [0, 0, 1, 1, 2, 2]

    def test_map_partitions_schema_inference_failure(self, session):
        """Test that an uninferable function asks for an explicit schema."""
        dataset = session.range(3)
        with pytest.raises(SchemaError, match="pass schema="):
            dataset.map_partitions(lambda df, i: df.assign(y=df["missing"]))

    def test_with_column(self, session):
        """Test adding a column."""
        dataset = session.range(3).with_column("square", lambda df: df["id"] ** 2, ColumnType.NUMERIC)

        assert dataset.schema["square"] == ColumnType.NUMERIC
        assert dataset.collect()["square"].tolist() == [1, 4, 9]

    def test_select_and_drop(self, session):
        """Test column selection."""
        dataset = session.create_dataset({"a": [1], "b": [2], "c": [3]})

        assert dataset.select("c", "a").collect().columns.tolist() == ["c", "a"]
        assert dataset.drop("b").columns == ["a", "c"]
        with pytest.raises(SchemaError):
            dataset.select("missing")

    def test_filter(self, session):
        """Test filtering with a mask function and a query string."""
        dataset = session.range(10, num_partitions=3)

        assert dataset.filter(lambda df: df["id"] % 2 == 0).collect()["id"].tolist() == [2, 4, 6, 8, 10]
        assert dataset.filter("id > 7").count() == 3

    def test_union(self, session):
        """Test union of datasets with the same columns."""
        left = session.create_dataset({"a": [1, 2], "b": ["x", "y"]}, num_partitions=1)
        right = session.create_dataset({"b": ["z"], "a": [3]}, num_partitions=1)
        union = left.union(right)

        assert union.num_partitions == 2
        assert union.collect()["a"].tolist() == [1, 2, 3]

    def test_union_different_columns(self, session):
        """Test that union requires equal column names."""
        with pytest.raises(SchemaError, match="different columns"):
            session.range(2).union(session.create_dataset({"x": [1]}))

    def test_union_across_sessions(self, session):
        """Test that datasets of different sessions cannot be combined."""
        with Session({"execution": {"max_workers": 1}}) as other:
            with pytest.raises(SessionError):
                session.range(2).union(other.range(2))

    def test_coalesce(self, session):
        """Test merging partitions without a shuffle."""
        dataset = session.range(10, num_partitions=5).coalesce(2)

        assert dataset.num_partitions == 2
        assert dataset.partition_sizes() == [6, 4]
        assert dataset.node.kind == OpKind.COALESCE
        assert session.range(4, num_partitions=2).coalesce(3).num_partitions == 2


class TestWideTransformations:
    """Test shuffles."""

    def test_repartition_even(self, session):
        """Test that repartition balances rows and keeps order."""
        dataset = session.create_dataset({"x": range(10)}, num_partitions=1).repartition(4)

        sizes = dataset.partition_sizes()
        assert len(sizes) == 4
        assert max(sizes) - min(sizes) <= 1
        assert dataset.collect()["x"].tolist() == list(range(10))

    def test_repartition_twice(self, session):
        """Test that repeated repartitioning keeps the partition count and rows."""
        dataset = session.range(10, num_partitions=10).repartition(10).repartition(10)

        assert dataset.num_partitions == 10
        assert sorted(dataset.collect()["id"].tolist()) == list(range(1, 11))

    @pytest.mark.parametrize("num_partitions", [0, -2])
    def test_repartition_rejects_non_positive_count(self, session, num_partitions):
        """Test that an explicit count below one is an error, not a request for the default."""
        dataset = session.range(10, num_partitions=2)

        with pytest.raises(ParameterError, match="must be positive"):
            dataset.repartition(num_partitions)
        with pytest.raises(ParameterError, match="must be positive"):
            dataset.repartition(num_partitions, by="id")
        with pytest.raises(ParameterError, match="must be positive"):
            dataset.group_agg("id", {"n": ("*", "count")}, num_partitions=num_partitions)

    def test_repartition_without_count(self, session):
        """Test the default counts of both repartition forms."""
        dataset = session.range(10, num_partitions=3).repartition(5)

        assert dataset.repartition().num_partitions == 3
        assert dataset.repartition(by="id").num_partitions == session.shuffle_partitions

    def test_repartition_by_key(self, session):
        """Test that hash repartitioning keeps each key in one partition."""
        data = {"k": ["a", "b", "c", "a", "b", "c", "a"], "v": range(7)}
        dataset = session.create_dataset(data, num_partitions=3).repartition(2, by="k")

        partitions = dataset.partitions()
        for key in ("a", "b", "c"):
            assert sum(key in set(p["k"]) for p in partitions) == 1

    def test_sort(self, session):
        """Test global sort across partitions."""
        rng = np.random.default_rng(3)
        values = rng.permutation(50)
        dataset = session.create_dataset({"x": values}, num_partitions=4)

        assert dataset.sort("x").collect()["x"].tolist() == list(range(50))
        assert dataset.sort("x", ascending=False).collect()["x"].tolist() == list(range(49, -1, -1))

    def test_group_agg(self, session):
        """Test grouped aggregation with a partial aggregate."""
        dataset = session.create_dataset({
            "k": ["a", "b", "a", "b", "a"],
            "v": [1.0, 2.0, 3.0, 4.0, 5.0],
        }, num_partitions=2)

        result = dataset.group_agg("k", {
            "total": ("v", "sum"),
            "avg": ("v", "mean"),
            "rows": ("*", "count"),
            "low": ("v", "min"),
            "high": ("v", "max"),
        }).collect().sort_values("k").reset_index(drop=True)

        assert result.columns.tolist() == ["k", "total", "avg", "rows", "low", "high"]
        assert result["total"].tolist() == [9.0, 6.0]
        assert result["avg"].tolist() == [3.0, 3.0]
        assert result["rows"].tolist() == [3, 2]
        assert result["low"].tolist() == [1.0, 2.0]
        assert result["high"].tolist() == [5.0, 4.0]

    def test_group_agg_validation(self, session):
        """Test invalid aggregation requests."""
        dataset = session.create_dataset({"k": ["a"], "v": [1.0]})

        with pytest.raises(ParameterError, match="Unknown aggregation"):
            dataset.group_agg("k", {"x": ("v", "median")})
        with pytest.raises(ParameterError, match="only valid with count"):
            dataset.group_agg("k", {"x": ("*", "sum")})
        with pytest.raises(SchemaError):
            dataset.group_agg("k", {"x": ("k", "sum")})

    def test_join(self, session):
        """Test a shuffled inner join."""
        left = session.create_dataset({"id": [1, 2, 3], "name": ["a", "b", "c"]}, num_partitions=2)
        right = session.create_dataset({"id": [1, 3, 4], "name": ["x", "y", "z"], "score": [0.1, 0.3, 0.4]},
                                       num_partitions=2)

        joined = left.join(right, on="id").collect().sort_values("id").reset_index(drop=True)

        assert joined.columns.tolist() == ["id", "name", "name_right", "score"]
        assert joined["id"].tolist() == [1, 3]
        assert joined["name_right"].tolist() == ["x", "y"]

    def test_left_join(self, session):
        """Test that a left join keeps unmatched rows."""
        left = session.create_dataset({"id": [1, 2]}, num_partitions=1)
        right = session.create_dataset({"id": [1], "v": [10.0]}, num_partitions=1)

        joined = left.join(right, on="id", how="left").collect().sort_values("id")

        assert joined["v"].isna().tolist() == [False, True]

    def test_broadcast_join(self, session):
        """Test that a broadcast join avoids a shuffle and gives the same rows."""
        facts = session.create_dataset({"code": ["a", "b", "a", "c"], "v": [1, 2, 3, 4]}, num_partitions=2)
        lookup = session.create_dataset({"code": ["a", "b"], "label": ["A", "B"]}, num_partitions=1)

        joined = facts.join(lookup.broadcast(), on="code")

        assert joined.node.kind == OpKind.BROADCAST_JOIN
        assert joined.num_partitions == 2
        result = joined.collect().sort_values("v")
        assert result["label"].tolist() == ["A", "B", "A"]

    def test_join_validation(self, session):
        """Test invalid join requests."""
        left = session.create_dataset({"id": [1]})
        with pytest.raises(ParameterError, match="Unsupported join type"):
            left.join(left, on="id", how="outer")
        with pytest.raises(SchemaError):
            left.join(session.create_dataset({"other": [1]}), on="id")


class TestActions:
    """Test actions and debugging helpers."""

    def test_count_and_head(self, session):
        """Test counting rows and taking the first rows."""
        dataset = session.range(12, num_partitions=3)

        assert dataset.count() == 12
        assert dataset.head(2)["id"].tolist() == [1, 2]

    def test_collect_empty(self, session):
        """Test that collecting an empty dataset keeps its columns."""
        empty = session.range(5).filter(lambda df: df["id"] > 100).collect()

        assert len(empty) == 0
        assert "id" in empty.columns

    def test_tree_aggregate(self, session):
        """Test aggregation without collecting rows."""
        dataset = session.range(100, num_partitions=7)

        total = dataset.tree_aggregate(0, lambda acc, df: acc + int(df["id"].sum()), lambda a, b: a + b)

        assert total == 5050

    def test_tree_aggregate_zero_is_not_shared(self, session):
        """Test that each partition folds into its own copy of the zero value."""
        dataset = session.range(6, num_partitions=3)

        def collect_ids(acc, df):
            acc.extend(df["id"].tolist())
            return acc

        result = dataset.tree_aggregate([], collect_ids, lambda a, b: a + b)

        assert sorted(result) == [1, 2, 3, 4, 5, 6]

    def test_explain(self, session):
        """Test the lineage and stage plan description."""
        dataset = session.range(10, num_partitions=2).repartition(3).filter("id > 2")
        plan = dataset.explain()

        assert "+- (3) repartition" in plan
        assert "Stage 0: shuffle map stage" in plan
        assert "Stage 1: result stage" in plan

    def test_lineage(self, session):
        """Test the lineage chain of a dataset."""
        source = session.range(4)
        derived = source.filter("id > 1").select("id")

        chain = derived.lineage()

        assert chain[0].id == derived.node_id
        assert chain[-1].id == source.node_id

    def test_closed_session(self):
        """Test that a closed session rejects new work."""
        session = Session({"execution": {"max_workers": 1}})
        session.close()

        assert session.closed
        with pytest.raises(SessionError, match="closed"):
            session.range(3)
