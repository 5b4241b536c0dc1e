from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import torch
from scipy.special import softmax
from sklearn.base import BaseEstimator, ClassifierMixin
from sklearn.model_selection import ParameterGrid, ParameterSampler, StratifiedKFold
from torch import nn

from .config import RANDOM_STATE, effective_n_workers

logger = logging.getLogger(__name__)

Column = Union[int, str]


class TorchSession:
    """Явная сессия torch: владеет пулом потоков на время своей жизни.

    Пока сессия открыта, torch использует ``n_workers`` intra-op потоков
    (-1 означает все логические ядра). При выходе из ``with`` прежнее
    значение восстанавливается на любом пути выхода.
    """

    def __init__(self, n_workers: Optional[int] = -1):
        self.n_workers = effective_n_workers(n_workers)
        self._previous: Optional[int] = None

    @property
    def active(self) -> bool:
        return self._previous is not None

    def start(self) -> "TorchSession":
        if self.active:
            raise RuntimeError("TorchSession is already started")
        self._previous = torch.get_num_threads()
        torch.set_num_threads(self.n_workers)
        logger.info("Torch session started with %d threads", self.n_workers)
        return self

    def shutdown(self) -> None:
        if not self.active:
            return
        torch.set_num_threads(self._previous)
        self._previous = None
        logger.info("Torch session shut down")

    def __enter__(self) -> "TorchSession":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def require_active(self) -> None:
        if not self.active:
            raise RuntimeError(
                "TorchSession is not started; open it with `with TorchSession(...)`"
            )

    @contextmanager
    def limit_workers(self, n_workers: int):
        """Временно ограничивает пул сессии ``n_workers`` потоками."""
        self.require_active()
        current = torch.get_num_threads()
        torch.set_num_threads(effective_n_workers(n_workers))
        try:
            yield torch.get_num_threads()
        finally:
            torch.set_num_threads(current)

    def to_frame(self, df: pd.DataFrame) -> "TorchFrame":
        self.require_active()
        return TorchFrame.from_pandas(df)


@dataclass
class TorchFrame:
    """Таблица во внутреннем представлении torch (float32, категории как коды)."""

    data: torch.Tensor
    columns: List[str]
    levels: Dict[str, List] = field(default_factory=dict)

    @classmethod
    def from_pandas(cls, df: pd.DataFrame) -> "TorchFrame":
        levels: Dict[str, List] = {}
        arrays = []
        for col in df.columns:
            series = df[col]
            if isinstance(series.dtype, pd.CategoricalDtype):
                levels[col] = list(series.cat.categories)
                arrays.append(series.cat.codes.to_numpy(dtype=np.float32))
            else:
                arrays.append(series.to_numpy(dtype=np.float32))
        data = np.ascontiguousarray(np.column_stack(arrays), dtype=np.float32)
        return cls(data=torch.from_numpy(data), columns=list(df.columns), levels=levels)

    @property
    def shape(self) -> Tuple[int, int]:
        return tuple(self.data.shape)

    def _index(self, column: Column) -> int:
        if isinstance(column, str):
            return self.columns.index(column)
        return int(column)

    def xy(
        self, x: Iterable[Column], y: Column
    ) -> Tuple[torch.Tensor, torch.Tensor, List]:
        """Возвращает признаки, коды классов и уровни столбца-ответа."""
        x_idx = [self._index(c) for c in x]
        y_idx = self._index(y)
        response = self.columns[y_idx]
        if response not in self.levels:
            raise ValueError(
                f"Response column {response!r} must be categorical for classification"
            )
        if y_idx in x_idx:
            raise ValueError(f"Response column {response!r} is among the predictors")
        return self.data[:, x_idx], self.data[:, y_idx].long(), self.levels[response]


class TorchMLPClassifier(ClassifierMixin, BaseEstimator):
    """Полносвязная сеть с ReLU, обучаемая обычным SGD с шагом ``rate``."""

    def __init__(
        self,
        hidden: Sequence[int] = (10, 10),
        rate: float = 0.005,
        epochs: int = 10,
        batch_size: int = 32,
        seed: int = RANDOM_STATE,
    ):
        self.hidden = hidden
        self.rate = rate
        self.epochs = epochs
        self.batch_size = batch_size
        self.seed = seed

    def _check_params(self) -> None:
        if not self.hidden or any(int(size) < 1 for size in self.hidden):
            raise ValueError(f"Hidden layer sizes must be positive, got {self.hidden}")
        if self.rate <= 0:
            raise ValueError(f"Learning rate must be positive, got {self.rate}")
        if self.epochs < 1 or self.batch_size < 1:
            raise ValueError("epochs and batch_size must be positive")

    def _build(self, n_inputs: int, n_outputs: int) -> nn.Sequential:
        layers: List[nn.Module] = []
        width = n_inputs
        for size in self.hidden:
            layers += [nn.Linear(width, int(size)), nn.ReLU()]
            width = int(size)
        layers.append(nn.Linear(width, n_outputs))
        return nn.Sequential(*layers)

    def fit(self, X, y) -> "TorchMLPClassifier":
        self._check_params()
        X = torch.as_tensor(np.asarray(X, dtype=np.float32))
        y = torch.as_tensor(np.asarray(y)).long()
        classes = torch.unique(y)
        targets = torch.searchsorted(classes, y)
        self.classes_ = classes.numpy()

        torch.manual_seed(self.seed)
        generator = torch.Generator().manual_seed(self.seed)
        self.model_ = self._build(X.shape[1], len(classes))
        optimizer = torch.optim.SGD(self.model_.parameters(), lr=self.rate)
        criterion = nn.CrossEntropyLoss()

        start = time.perf_counter()
        self.loss_history_: List[float] = []
        self.model_.train()
        for _ in range(self.epochs):
            order = torch.randperm(len(X), generator=generator)
            epoch_loss = 0.0
            for batch in order.split(self.batch_size):
                optimizer.zero_grad()
                loss = criterion(self.model_(X[batch]), targets[batch])
                loss.backward()
                optimizer.step()
                epoch_loss += loss.item() * len(batch)
            self.loss_history_.append(epoch_loss / len(X))
        self.model_.eval()
        self.run_time = (time.perf_counter() - start) * 1000.0
        return self

    def train(self, x: Iterable[Column], y: Column, training_frame: TorchFrame):
        """Обучение по индексам столбцов фрейма, как в h2o."""
        X, labels, _ = training_frame.xy(x, y)
        return self.fit(X, labels)

    def _logits(self, X) -> np.ndarray:
        X = torch.as_tensor(np.asarray(X, dtype=np.float32))
        with torch.no_grad():
            return self.model_(X).numpy()

    def predict_proba(self, X) -> np.ndarray:
        return softmax(self._logits(X), axis=1)

    def predict(self, X) -> np.ndarray:
        return self.classes_[np.argmax(self._logits(X), axis=1)]


class TorchGridSearch:
    """Перебор гиперпараметров TorchMLPClassifier с k-fold кросс-валидацией.

    ``search_criteria`` повторяет h2o: ``{"strategy": "Cartesian"}`` или
    ``{"strategy": "RandomDiscrete", "max_models": N, "seed": S}``.
    ``max_models`` ограничивается размером сетки, поэтому при N >= размера
    сетки проверяется каждая точка.
    """

    def __init__(
        self,
        hyper_params: Dict[str, List],
        search_criteria: Optional[Dict] = None,
        model_params: Optional[Dict] = None,
    ):
        self.hyper_params = hyper_params
        self.search_criteria = search_criteria or {"strategy": "Cartesian"}
        self.model_params = model_params or {}

    def candidates(self) -> List[Dict]:
        grid = ParameterGrid(self.hyper_params)
        strategy = self.search_criteria.get("strategy", "Cartesian")
        if strategy == "Cartesian":
            return list(grid)
        if strategy == "RandomDiscrete":
            n_iter = min(self.search_criteria.get("max_models", len(grid)), len(grid))
            return list(
                ParameterSampler(
                    self.hyper_params,
                    n_iter=n_iter,
                    random_state=self.search_criteria.get("seed"),
                )
            )
        raise ValueError(f"Unknown search strategy {strategy}")

    def train(
        self,
        x: Iterable[Column],
        y: Column,
        training_frame: TorchFrame,
        nfolds: int = 5,
    ) -> "TorchGridSearch":
        x = list(x)
        X, labels, _ = training_frame.xy(x, y)
        X_np, y_np = X.numpy(), labels.numpy()
        cv = StratifiedKFold(
            n_splits=nfolds,
            shuffle=True,
            random_state=self.search_criteria.get("seed", RANDOM_STATE),
        )

        start = time.perf_counter()
        self.cv_results: List[Tuple[Dict, float]] = []
        self.n_fits = 0
        for params in self.candidates():
            fold_scores = []
            for train_idx, val_idx in cv.split(X_np, y_np):
                model = TorchMLPClassifier(**{**self.model_params, **params})
                model.fit(X_np[train_idx], y_np[train_idx])
                fold_scores.append(model.score(X_np[val_idx], y_np[val_idx]))
                self.n_fits += 1
            score = float(np.mean(fold_scores))
            self.cv_results.append((params, score))
            logger.debug("Torch candidate %s: CV accuracy %.4f", params, score)

        best_idx = int(np.argmax([score for _, score in self.cv_results]))
        self.best_params, self.best_score = self.cv_results[best_idx]
        self.best_model = TorchMLPClassifier(
            **{**self.model_params, **self.best_params}
        ).train(x, y, training_frame)
        self.run_time = (time.perf_counter() - start) * 1000.0
        return self
