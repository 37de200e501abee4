"""Example: fit a feature pipeline and a classifier, inspect the plan, save and reload the model."""

import tempfile
from pathlib import Path

import numpy as np
import pandas as pd

from sparklet import Session, Pipeline, load, save
from sparklet.ml import (
    BinaryClassificationEvaluator,
    LogisticRegression,
    OneHotEncoder,
    StandardScaler,
    StringIndexer,
    VectorAssembler
)


def create_passenger_data(n_samples: int = 400) -> pd.DataFrame:
    """Create a small passenger-like dataset."""
    rng = np.random.default_rng(42)
    sex = rng.choice(["male", "female"], size=n_samples, p=[0.6, 0.4])
    age = rng.normal(30, 12, size=n_samples).clip(1, 80)
    fare = rng.lognormal(3, 1, size=n_samples)
    logit = 1.5 * (sex == "female") - 0.02 * (age - 30) + 0.3 * np.log(fare) - 1.0
    label = (rng.random(n_samples) < 1 / (1 + np.exp(-logit))).astype(float)
    return pd.DataFrame({"sex": sex, "age": age, "fare": fare, "label": label})


def main():
    with Session({"execution": {"max_workers": 4, "default_parallelism": 4}}) as session:
        data = session.create_dataset(create_passenger_data())

        pipeline = Pipeline([
            StringIndexer(input_col="sex", output_col="sex_index"),
            OneHotEncoder(input_col="sex_index", output_col="sex_vec"),
            VectorAssembler(input_cols=["sex_vec", "age", "fare"], output_col="raw_features"),
            StandardScaler(input_col="raw_features", output_col="features", with_mean=True),
            LogisticRegression(max_iter=200),
        ])

        model = pipeline.fit(data)
        predictions = model.transform(data)

        print("Execution plan:")
        print(predictions.explain())

        auc = BinaryClassificationEvaluator()(predictions)
        print(f"\nTraining AUC: {auc:.3f}")
        print(predictions.select("sex", "age", "prediction").head(5))

        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "passenger_model"
            save(model, path)
            restored = load(path)
            same = restored.transform(data).collect()["prediction"].equals(predictions.collect()["prediction"])
            print(f"\nReloaded model gives identical predictions: {same}")

        print("\nSession statistics:")
        stats = session.statistics()
        print(f"  jobs: {stats['scheduler']['jobs_succeeded']} succeeded, "
              f"tasks: {stats['scheduler']['tasks_succeeded']}")


if __name__ == "__main__":
    main()
