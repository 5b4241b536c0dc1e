import os

from covertype.ann_timing import covertype_ann_timing_analysis as analysis
from covertype.ann_timing.config import (
    LABEL_COLUMN,
    NO_SEARCH,
    SKLEARN,
    TORCH,
    ExperimentConfig,
)
from covertype.ann_timing.dataclasses import HyperGrid
from covertype.ann_timing.torch_backend import TorchSession
from covertype.ann_timing.utils import preprocess


def test_baseline_runs_on_downsampled_synthetic_data(monkeypatch, covtype_gz, tmp_path):
    monkeypatch.setattr(analysis, "fetch_covtype", lambda url, cache_dir: covtype_gz)
    config = ExperimentConfig(output_dir=str(tmp_path), n_workers=1, epochs=2, max_iter=50)
    ep = analysis.EntryPoint()

    df = ep.load_covtype_df(config)
    assert len(df) == 20

    train, test = preprocess(df, random_state=123)
    assert abs(len(train) - 16) <= 1
    assert len(train) + len(test) == 20
    assert train[LABEL_COLUMN].nunique() == df[LABEL_COLUMN].nunique()

    with TorchSession(config.n_workers) as session:
        results = [
            ep.run_model(framework, NO_SEARCH, train, config, session)
            for framework in (SKLEARN, TORCH)
        ]
    assert [r.framework for r in results] == [SKLEARN, TORCH]
    for result in results:
        assert result.elapsed_sec >= 0
        assert result.n_fits == 1
        assert result.n_workers == 1


def test_main_produces_report(monkeypatch, tmp_path, covtype_factory):
    path = tmp_path / "covtype.data.gz"
    covtype_factory(n_rows=5000).to_csv(path, header=False, index=False, compression="gzip")
    monkeypatch.setattr(analysis, "fetch_covtype", lambda url, cache_dir: str(path))

    grid = HyperGrid(structure_sizes=(5,), regularization_strengths=(0.1, 0.5))
    config = ExperimentConfig(
        output_dir=str(tmp_path / "out"),
        n_workers=1,
        epochs=2,
        max_iter=30,
        sklearn_grid=grid,
        torch_grid=grid,
    )
    table = analysis.EntryPoint().main(config)
    assert len(table) == 4
    assert (table["Time"] >= 0).all()
    assert os.path.exists(os.path.join(config.fig_dir, "training_time.png"))


def test_cli_arguments_map_onto_config():
    args = analysis.parse_args(["--workers", "3", "--scale-after-split", "--output-dir", "out"])
    assert args.workers == 3
    assert args.scale_after_split
    assert args.output_dir == "out"
    assert args.cache_dir is None
