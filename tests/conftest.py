import numpy as np
import pandas as pd
import pytest

from covertype.ann_timing.config import (
    FEATURE_COLUMNS,
    LABEL_COLUMN,
    N_FEATURES,
    ExperimentConfig,
)
from covertype.ann_timing.utils import cast_label, standardize


def make_covtype_like(n_rows: int = 1000, n_classes: int = 3, seed: int = 0) -> pd.DataFrame:
    """Синтетическая таблица со схемой covtype: 54 признака и метка 1..n_classes."""
    rng = np.random.default_rng(seed)
    labels = np.arange(n_rows) % n_classes + 1
    features = rng.normal(loc=3.0, scale=2.0, size=(n_rows, N_FEATURES))
    features += labels[:, None] * 0.75
    df = pd.DataFrame(features, columns=FEATURE_COLUMNS)
    df[LABEL_COLUMN] = labels
    return df


@pytest.fixture
def covtype_like():
    return make_covtype_like()


@pytest.fixture
def covtype_gz(tmp_path, covtype_like):
    path = tmp_path / "covtype.data.gz"
    covtype_like.to_csv(path, header=False, index=False, compression="gzip")
    return str(path)


@pytest.fixture
def train_frame():
    df = cast_label(make_covtype_like(n_rows=150, seed=1))
    df, _ = standardize(df)
    return df


@pytest.fixture
def small_config(tmp_path):
    return ExperimentConfig(
        n_workers=2,
        max_iter=50,
        epochs=3,
        output_dir=str(tmp_path),
    )


@pytest.fixture
def covtype_factory():
    return make_covtype_like
