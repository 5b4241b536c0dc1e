from __future__ import annotations

import os

from .config import (
    FEATURE_COLUMNS,
    FIG_DIR,
    GRID_SEARCH,
    LABEL_COLUMN,
    N_FEATURES,
    NO_SEARCH,
    SEARCH_MODES,
    SKLEARN,
    TORCH,
    ExperimentConfig,
    effective_n_workers,
)

# Ensure matplotlib cache is writable in sandboxed environments.
os.environ.setdefault("MPLCONFIGDIR", os.path.join(FIG_DIR, ".matplotlib"))
os.makedirs(os.environ["MPLCONFIGDIR"], exist_ok=True)

import argparse
import logging
import time
from typing import List, Optional, Sequence

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns
from sklearn.model_selection import GridSearchCV, StratifiedKFold
from sklearn.neural_network import MLPClassifier
from threadpoolctl import threadpool_limits

from .dataclasses import TrainingRunResult
from .torch_backend import TorchGridSearch, TorchMLPClassifier, TorchSession
from .utils import (
    comparison_table,
    downsample,
    fetch_covtype,
    preprocess,
    read_covtype,
)

logger = logging.getLogger(__name__)


class DatasetLoaderMixin:
    """Класс-миксин для загрузки и прореживания набора covtype."""

    def load_covtype_df(self, config: ExperimentConfig) -> pd.DataFrame:
        source = fetch_covtype(config.url, config.cache_dir)
        df = read_covtype(source)
        sampled = downsample(df, config.downsample_factor, config.random_state)
        logger.info(
            "Loaded %d rows, kept %d after 1/%d downsampling",
            len(df),
            len(sampled),
            config.downsample_factor,
        )
        return sampled


class ModelRunnerMixin:
    """Класс для обучения сетей двумя фреймворками с замером времени."""

    def run_sklearn(
        self, train: pd.DataFrame, mode: str, config: ExperimentConfig
    ) -> TrainingRunResult:
        X = train[FEATURE_COLUMNS]
        y = train[LABEL_COLUMN].to_numpy()

        if mode == NO_SEARCH:
            model = MLPClassifier(
                **config.baseline.to_sklearn(),
                max_iter=config.max_iter,
                random_state=config.random_state,
            )
            # Базовая линия: BLAS/OpenMP тоже в один поток.
            with threadpool_limits(limits=1):
                start = time.perf_counter()
                model.fit(X, y)
                elapsed = time.perf_counter() - start
            return TrainingRunResult(
                framework=SKLEARN,
                search_mode=NO_SEARCH,
                elapsed_sec=elapsed,
                model=model,
                n_workers=1,
                n_fits=1,
                best_params=config.baseline.to_sklearn(),
            )

        n_workers = effective_n_workers(config.n_workers)
        search = GridSearchCV(
            MLPClassifier(max_iter=config.max_iter, random_state=config.random_state),
            param_grid=config.sklearn_grid.to_sklearn(),
            cv=StratifiedKFold(
                n_splits=config.cv_folds, shuffle=True, random_state=config.random_state
            ),
            n_jobs=n_workers,
            refit=True,
        )
        start = time.perf_counter()
        search.fit(X, y)
        elapsed = time.perf_counter() - start
        return TrainingRunResult(
            framework=SKLEARN,
            search_mode=GRID_SEARCH,
            elapsed_sec=elapsed,
            model=search,
            n_workers=n_workers,
            n_fits=len(search.cv_results_["params"]) * search.n_splits_,
            best_params=search.best_params_,
        )

    def run_torch(
        self,
        train: pd.DataFrame,
        mode: str,
        config: ExperimentConfig,
        session: Optional[TorchSession],
    ) -> TrainingRunResult:
        if session is None:
            raise RuntimeError("Torch runs need an active TorchSession")
        frame = session.to_frame(train[FEATURE_COLUMNS + [LABEL_COLUMN]])
        x, y = list(range(N_FEATURES)), N_FEATURES
        model_params = {
            "epochs": config.epochs,
            "batch_size": config.batch_size,
            "seed": config.random_state,
        }

        if mode == NO_SEARCH:
            model = TorchMLPClassifier(**config.baseline.to_torch(), **model_params)
            with session.limit_workers(1) as n_workers:
                start = time.perf_counter()
                model.train(x=x, y=y, training_frame=frame)
                elapsed = time.perf_counter() - start
            return TrainingRunResult(
                framework=TORCH,
                search_mode=NO_SEARCH,
                elapsed_sec=elapsed,
                model=model,
                n_workers=n_workers,
                n_fits=1,
                best_params=config.baseline.to_torch(),
            )

        search = TorchGridSearch(
            hyper_params=config.torch_grid.to_torch(),
            search_criteria=config.search_criteria,
            model_params=model_params,
        )
        start = time.perf_counter()
        search.train(x=x, y=y, training_frame=frame, nfolds=config.cv_folds)
        elapsed = time.perf_counter() - start
        return TrainingRunResult(
            framework=TORCH,
            search_mode=GRID_SEARCH,
            elapsed_sec=elapsed,
            model=search,
            n_workers=session.n_workers,
            n_fits=search.n_fits,
            best_params=search.best_params,
        )

    def run_model(
        self,
        framework: str,
        mode: str,
        train: pd.DataFrame,
        config: ExperimentConfig,
        session: Optional[TorchSession] = None,
    ) -> TrainingRunResult:
        if mode not in SEARCH_MODES:
            raise ValueError(f"Unknown search mode {mode}")
        if framework == SKLEARN:
            result = self.run_sklearn(train, mode, config)
        elif framework == TORCH:
            result = self.run_torch(train, mode, config, session)
        else:
            raise ValueError(f"Unknown framework {framework}")
        logger.info(
            "[%s | %s] train_time: %.3fs | fits: %d | workers: %d | params: %s",
            framework,
            mode,
            result.elapsed_sec,
            result.n_fits,
            result.n_workers,
            result.best_params,
        )
        return result

    def evaluate_models(
        self,
        train: pd.DataFrame,
        config: ExperimentConfig,
        session: TorchSession,
    ) -> List[TrainingRunResult]:
        """Четыре прогона строго последовательно: без поиска, затем с сеткой."""
        return [
            self.run_model(framework, mode, train, config, session)
            for framework in (SKLEARN, TORCH)
            for mode in (NO_SEARCH, GRID_SEARCH)
        ]

    def holdout_accuracy(self, result: TrainingRunResult, test: pd.DataFrame) -> float:
        X = test[FEATURE_COLUMNS]
        if result.framework == TORCH:
            model = result.model
            if isinstance(model, TorchGridSearch):
                model = model.best_model
            return model.score(X, test[LABEL_COLUMN].cat.codes.to_numpy())
        return result.model.score(X, test[LABEL_COLUMN].to_numpy())


class ReporterMixin:
    """Класс для сводной таблицы и графика времени обучения."""

    def render_comparison(self, table: pd.DataFrame, fig_dir: str = FIG_DIR) -> str:
        os.makedirs(fig_dir, exist_ok=True)
        sns.set_theme(style="whitegrid", context="notebook")

        path = os.path.join(fig_dir, "training_time.png")
        plt.figure(figsize=(7, 5))
        ax = sns.barplot(data=table, x="Method", y="Time", hue="Type")
        ax.set_xlabel("")
        ax.set_ylabel("Elapsed time (s)")
        plt.title("ANN training time with and without grid search")
        plt.tight_layout()
        plt.savefig(path, dpi=200, bbox_inches="tight")
        plt.close()
        return path

    def report(
        self, results: List[TrainingRunResult], config: ExperimentConfig
    ) -> pd.DataFrame:
        table = comparison_table(results)
        os.makedirs(config.output_dir, exist_ok=True)
        out_csv = os.path.join(config.output_dir, "training_time.csv")
        table.to_csv(out_csv, index=False)
        chart = self.render_comparison(table, config.fig_dir)
        print("\nTraining time by method:")
        print(table.pivot(index="Method", columns="Type", values="Time"))
        print(f"\nChart saved to {chart}, table saved to {out_csv}")
        return table


class EntryPoint(DatasetLoaderMixin, ModelRunnerMixin, ReporterMixin):
    """Класс-энтрипоинт: загрузка, подготовка, четыре прогона и отчёт."""

    def main(self, config: Optional[ExperimentConfig] = None) -> pd.DataFrame:
        config = config or ExperimentConfig()
        df = self.load_covtype_df(config)
        train, test = preprocess(
            df,
            train_fraction=config.train_fraction,
            random_state=config.random_state,
            scale_after_split=config.scale_after_split,
        )
        logger.info("Train: %d rows | test: %d rows", len(train), len(test))

        with TorchSession(config.n_workers) as session:
            results = self.evaluate_models(train, config, session)
            for result in results:
                logger.info(
                    "[%s | %s] holdout accuracy: %.4f",
                    result.framework,
                    result.search_mode,
                    self.holdout_accuracy(result, test),
                )
        return self.report(results, config)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Compare ANN training time in scikit-learn and PyTorch on covtype."
    )
    parser.add_argument("--output-dir", default=".", help="Where to write CSV and figures")
    parser.add_argument("--cache-dir", default=None, help="Keep the downloaded dataset here")
    parser.add_argument(
        "--workers", type=int, default=-1, help="Worker count for grid search (-1 = all cores)"
    )
    parser.add_argument(
        "--scale-after-split",
        action="store_true",
        help="Fit scaling statistics on the train partition only",
    )
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = ExperimentConfig(
        cache_dir=args.cache_dir,
        n_workers=args.workers,
        scale_after_split=args.scale_after_split,
        output_dir=args.output_dir,
    )
    EntryPoint().main(config)


if __name__ == "__main__":
    main()
