from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple


@dataclass(frozen=True)
class HyperParams:
    """Размер сети и сила регуляризации в терминах, общих для обоих фреймворков."""

    structure_size: int
    regularization_strength: float

    def to_sklearn(self) -> Dict:
        return {
            "hidden_layer_sizes": (self.structure_size,),
            "alpha": self.regularization_strength,
        }

    def to_torch(self) -> Dict:
        return {
            "hidden": (self.structure_size, self.structure_size),
            "rate": self.regularization_strength,
        }


@dataclass(frozen=True)
class HyperGrid:
    structure_sizes: Tuple[int, ...]
    regularization_strengths: Tuple[float, ...]

    def __len__(self) -> int:
        return len(self.structure_sizes) * len(self.regularization_strengths)

    def to_sklearn(self) -> Dict[str, List]:
        """Сетка для GridSearchCV (nnet: size/decay)."""
        return {
            "hidden_layer_sizes": [(s,) for s in self.structure_sizes],
            "alpha": list(self.regularization_strengths),
        }

    def to_torch(self) -> Dict[str, List]:
        """Сетка для TorchGridSearch (h2o: hidden/rate)."""
        return {
            "hidden": [(s, s) for s in self.structure_sizes],
            "rate": list(self.regularization_strengths),
        }


@dataclass(frozen=True)
class TrainingRunResult:
    framework: str
    search_mode: str
    elapsed_sec: float
    model: Any = field(repr=False, compare=False)
    n_workers: int = 1
    n_fits: int = 1
    best_params: Dict = field(default_factory=dict, compare=False)
