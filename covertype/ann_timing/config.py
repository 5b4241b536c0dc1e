from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from .dataclasses import HyperGrid, HyperParams

RANDOM_STATE = 123

COVTYPE_URL = (
    "https://archive.ics.uci.edu/ml/machine-learning-databases/covtype/covtype.data.gz"
)
N_FEATURES = 54
FEATURE_COLUMNS = [f"V{i}" for i in range(1, N_FEATURES + 1)]
LABEL_COLUMN = "Cover_Type"
COLUMNS = FEATURE_COLUMNS + [LABEL_COLUMN]

DOWNSAMPLE_FACTOR = 50
TRAIN_FRACTION = 0.8
CV_FOLDS = 5

FIG_DIR = "figures"

SKLEARN = "sklearn"
TORCH = "torch"
FRAMEWORKS = (SKLEARN, TORCH)

NO_SEARCH = "none"
GRID_SEARCH = "grid"
SEARCH_MODES = (NO_SEARCH, GRID_SEARCH)


def effective_n_workers(n_workers: Optional[int]) -> int:
    """Переводит -1 (или None) в число логических ядер машины."""
    if n_workers is None or n_workers == -1:
        return os.cpu_count() or 1
    if n_workers < 1:
        raise ValueError(f"Invalid worker count {n_workers}")
    return n_workers


@dataclass
class ExperimentConfig:
    """Все параметры одного прогона сравнения.

    Значения по умолчанию воспроизводят исходный отчёт: covtype, выборка 1/50,
    разбиение 80/20 с seed 123, 5-fold CV и сетки 2x2 для обоих фреймворков.
    """

    url: str = COVTYPE_URL
    cache_dir: Optional[str] = None
    downsample_factor: int = DOWNSAMPLE_FACTOR
    train_fraction: float = TRAIN_FRACTION
    random_state: int = RANDOM_STATE
    cv_folds: int = CV_FOLDS
    n_workers: int = -1
    scale_after_split: bool = False
    output_dir: str = "."
    baseline: HyperParams = field(
        default_factory=lambda: HyperParams(structure_size=10, regularization_strength=0.1)
    )
    sklearn_grid: HyperGrid = field(
        default_factory=lambda: HyperGrid(
            structure_sizes=(5, 10), regularization_strengths=(0.1, 0.5)
        )
    )
    torch_grid: HyperGrid = field(
        default_factory=lambda: HyperGrid(
            structure_sizes=(5, 10), regularization_strengths=(0.1, 0.5)
        )
    )
    search_criteria: Dict = field(
        default_factory=lambda: {
            "strategy": "RandomDiscrete",
            "max_models": 20,
            "seed": RANDOM_STATE,
        }
    )
    max_iter: int = 200
    epochs: int = 10
    batch_size: int = 32

    @property
    def fig_dir(self) -> str:
        return os.path.join(self.output_dir, FIG_DIR)
