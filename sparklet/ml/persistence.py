"""
Saving and loading of stages, pipelines and fitted pipeline models.

Layout of a saved pipeline::

    <path>/metadata.json
    <path>/stages/000_<uid>/metadata.json
    <path>/stages/000_<uid>/data.parquet     (fitted models only)
    <path>/stages/001_<uid>/...

A single stage is saved with the stage record layout directly under
``<path>``. Stage order comes from the numeric directory prefix.

Only stage params and each model's ``state()`` are persisted. Attributes
attached to wrapper objects, such as cross validation metrics, are not.
"""

import json
import logging
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Union

import numpy as np
import pyarrow as pa
import pyarrow.parquet as pq

from ..core.errors import ParameterError, PersistenceError
from ..core.interfaces import Model, PipelineStage
from ..core.registry import stage_registry
from .pipeline import Pipeline, PipelineModel
from .tuning import TuningModel

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
METADATA_FILE = "metadata.json"
DATA_FILE = "data.parquet"
STAGES_DIR = "stages"

_STAGE_DIR_PATTERN = re.compile(r"^(\d{3})_")

_STATE_SCHEMA = pa.schema([
    ("name", pa.string()),
    ("kind", pa.string()),
    ("shape", pa.list_(pa.int64())),
    ("values", pa.list_(pa.float64())),
    ("labels", pa.list_(pa.string())),
])


def _json_default(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    with open(path, "w") as f:
        json.dump(data, f, indent=2, default=_json_default)


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise PersistenceError(f"Missing metadata file: {path}", {"path": str(path)})
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise PersistenceError(f"Malformed metadata file {path}: {e}", {"path": str(path)})
    if not isinstance(data, dict):
        raise PersistenceError(f"Malformed metadata file {path}: expected an object", {"path": str(path)})
    return data


# Numeric state

def _is_labels(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value)


def write_state(state: Dict[str, Any], path: Path) -> None:
    """Write a model's state as one row per entry (scalars, arrays or label lists)."""
    rows: Dict[str, List[Any]] = {name: [] for name in _STATE_SCHEMA.names}
    for name, value in state.items():
        rows["name"].append(name)
        if _is_labels(value):
            rows["kind"].append("labels")
            rows["shape"].append([len(value)])
            rows["values"].append([])
            rows["labels"].append(list(value))
            continue
        array = np.asarray(value, dtype=float)
        rows["kind"].append("scalar" if array.ndim == 0 else "array")
        rows["shape"].append(list(array.shape))
        rows["values"].append(array.ravel().tolist())
        rows["labels"].append([])
    pq.write_table(pa.Table.from_pydict(rows, schema=_STATE_SCHEMA), path)


def read_state(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise PersistenceError(f"Missing model data file: {path}", {"path": str(path)})
    state = {}
    for row in pq.read_table(path).to_pylist():
        if row["kind"] == "labels":
            state[row["name"]] = list(row["labels"])
        elif row["kind"] == "scalar":
            state[row["name"]] = float(row["values"][0])
        else:
            state[row["name"]] = np.asarray(row["values"], dtype=float).reshape(row["shape"])
    return state


# Saving

def _stage_dir_name(position: int, stage: PipelineStage) -> str:
    return f"{position:03d}_{stage.uid}"


def _save_stage(stage: PipelineStage, directory: Path, position: int = 0) -> None:
    if isinstance(stage, (Pipeline, PipelineModel)):
        _save_pipeline(stage, directory, position)
        return
    if not stage.type_tag or not stage_registry.is_registered(stage.type_tag):
        raise PersistenceError(f"Stage {stage.uid} ({type(stage).__name__}) has no registered type tag "
                               f"and cannot be saved")

    directory.mkdir(parents=True, exist_ok=True)
    record = {
        "format_version": FORMAT_VERSION,
        "layout": "stage",
        "class": stage.type_tag,
        "uid": stage.uid,
        "position": position,
        "params": stage.explicit_params(),
    }
    if isinstance(stage, Model):
        record["parent_uid"] = stage.parent_uid
        write_state(stage.state(), directory / DATA_FILE)
    _write_json(directory / METADATA_FILE, record)


def _save_pipeline(pipeline: Union[Pipeline, PipelineModel], directory: Path, position: int = 0) -> None:
    stages_dir = directory / STAGES_DIR
    stages_dir.mkdir(parents=True, exist_ok=True)
    names = []
    for index, stage in enumerate(pipeline.stages):
        name = _stage_dir_name(index, stage)
        _save_stage(stage, stages_dir / name, index)
        names.append(name)

    record = {
        "format_version": FORMAT_VERSION,
        "layout": "pipeline",
        "class": pipeline.type_tag,
        "uid": pipeline.uid,
        "position": position,
        "num_stages": len(names),
        "stages": names,
    }
    if isinstance(pipeline, PipelineModel):
        record["parent_uid"] = pipeline.parent_uid
    _write_json(directory / METADATA_FILE, record)


def save(obj: PipelineStage, path: Union[str, Path], overwrite: bool = False) -> Path:
    """
    Save a stage, pipeline or fitted pipeline model under ``path``.

    Tuning results are saved as their best model.
    """
    if isinstance(obj, TuningModel):
        obj = obj.best_model
    if not isinstance(obj, PipelineStage):
        raise PersistenceError(f"Cannot save {obj!r}: not a pipeline stage")

    path = Path(path)
    if path.exists():
        if not overwrite:
            raise PersistenceError(f"Path {path} already exists; pass overwrite=True to replace it",
                                   {"path": str(path)})
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()

    _save_stage(obj, path)
    logger.info(f"Saved {type(obj).__name__} {obj.uid} to {path}")
    return path


# Loading

def _check_version(record: Dict[str, Any], path: Path) -> None:
    version = record.get("format_version")
    if version != FORMAT_VERSION:
        raise PersistenceError(f"Unsupported format version {version!r} in {path} "
                               f"(expected {FORMAT_VERSION})", {"path": str(path)})


def _ordered_stage_dirs(stages_dir: Path) -> List[Path]:
    if not stages_dir.is_dir():
        return []
    numbered = []
    for child in stages_dir.iterdir():
        match = _STAGE_DIR_PATTERN.match(child.name)
        if child.is_dir() and match:
            numbered.append((int(match.group(1)), child))
    numbered.sort(key=lambda item: item[0])
    for expected, (position, child) in enumerate(numbered):
        if position != expected:
            raise PersistenceError(f"Stage directories in {stages_dir} are not numbered consecutively: "
                                   f"found {child.name} at position {expected}", {"path": str(stages_dir)})
    return [child for _, child in numbered]


def _load_stage(directory: Path) -> PipelineStage:
    record = _read_json(directory / METADATA_FILE)
    _check_version(record, directory)
    if record.get("layout") == "pipeline":
        return _load_pipeline(record, directory)

    tag = record.get("class")
    try:
        stage_class = stage_registry.get_stage_class(tag)
    except KeyError:
        raise PersistenceError(f"Unknown stage type '{tag}' in {directory}", {"path": str(directory)})

    params = record.get("params") or {}
    try:
        if issubclass(stage_class, Model):
            stage = stage_class.from_state(record["uid"], params, read_state(directory / DATA_FILE))
            stage.parent_uid = record.get("parent_uid")
        else:
            stage = stage_class(uid=record["uid"], **params)
    except (ParameterError, KeyError, TypeError, ValueError) as e:
        raise PersistenceError(f"Cannot restore stage from {directory}: {e}", {"path": str(directory)})
    return stage


def _load_pipeline(record: Dict[str, Any], directory: Path) -> PipelineStage:
    stage_dirs = _ordered_stage_dirs(directory / STAGES_DIR)
    expected = record.get("num_stages")
    if expected != len(stage_dirs) or record.get("stages", []) != [d.name for d in stage_dirs]:
        raise PersistenceError(f"{directory} declares {expected} stages {record.get('stages')} but contains "
                               f"{[d.name for d in stage_dirs]}", {"path": str(directory)})

    stages = []
    for position, stage_dir in enumerate(stage_dirs):
        stage = _load_stage(stage_dir)
        stage_record = _read_json(stage_dir / METADATA_FILE)
        if stage_record.get("position") != position:
            raise PersistenceError(f"Stage {stage_dir.name} records position {stage_record.get('position')}, "
                                   f"expected {position}", {"path": str(stage_dir)})
        stages.append(stage)

    tag = record.get("class")
    try:
        if tag == PipelineModel.type_tag:
            return PipelineModel(stages, uid=record["uid"], parent_uid=record.get("parent_uid"))
        if tag == Pipeline.type_tag:
            return Pipeline(stages, uid=record["uid"])
    except ParameterError as e:
        raise PersistenceError(f"Cannot restore pipeline from {directory}: {e}", {"path": str(directory)})
    raise PersistenceError(f"Unknown pipeline type '{tag}' in {directory}", {"path": str(directory)})


def load(path: Union[str, Path]) -> PipelineStage:
    """Load whatever ``save`` wrote under ``path``."""
    path = Path(path)
    if not path.is_dir():
        raise PersistenceError(f"No saved stage at {path}", {"path": str(path)})
    stage = _load_stage(path)
    logger.info(f"Loaded {type(stage).__name__} {stage.uid} from {path}")
    return stage


def read_metadata(path: Union[str, Path]) -> List[Dict[str, Any]]:
    """Stage records of a saved directory in position order, for inspection."""
    path = Path(path)
    record = _read_json(path / METADATA_FILE)
    _check_version(record, path)
    if record.get("layout") != "pipeline":
        return [record]
    return [_read_json(d / METADATA_FILE) for d in _ordered_stage_dirs(path / STAGES_DIR)]
