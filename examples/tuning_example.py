"""Example: cross validate a regression pipeline over a parameter grid."""

import numpy as np
import pandas as pd

from sparklet import Session, Pipeline
from sparklet.ml import (
    CrossValidator,
    LinearRegression,
    ParamGridBuilder,
    RegressionEvaluator,
    VectorAssembler
)


def create_regression_data(n_samples: int = 500) -> pd.DataFrame:
    """Create sample regression data."""
    rng = np.random.default_rng(7)
    X = rng.normal(size=(n_samples, 4))
    weights = np.array([2.5, -1.8, 3.2, -0.5])
    y = X @ weights + rng.normal(scale=0.5, size=n_samples)
    data = pd.DataFrame(X, columns=[f"x{i}" for i in range(4)])
    data["label"] = y
    return data


def main():
    config = {"tuning": {"num_folds": 5, "seed": 11, "parallelism": 2}}
    with Session(config) as session:
        data = session.create_dataset(create_regression_data(), num_partitions=4)

        assembler = VectorAssembler(input_cols=["x0", "x1", "x2", "x3"], output_col="features")
        regression = LinearRegression()
        pipeline = Pipeline([assembler, regression])

        grid = (ParamGridBuilder()
                .add_grid(regression, "reg_param", [0.0, 0.01, 0.1])
                .add_grid(regression, "elastic_net_param", [0.0, 0.5])
                .build())

        validator = CrossValidator(pipeline, grid, RegressionEvaluator(metric_name="rmse"))
        result = validator.fit(data)

        print("Cross validation results:")
        print(result.metrics_table().to_string())
        print(f"\nBest parameters: {result.best_params}")

        fitted_regression = result.best_model.stages[-1]
        print(f"Coefficients: {np.round(fitted_regression.coefficients, 3)}")


if __name__ == "__main__":
    main()
