import io
import logging
import os
import tempfile
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd
import requests
from sklearn.model_selection import train_test_split
from sklearn.preprocessing import StandardScaler

from .config import (
    COLUMNS,
    FEATURE_COLUMNS,
    FRAMEWORKS,
    LABEL_COLUMN,
    RANDOM_STATE,
    SEARCH_MODES,
)
from .dataclasses import TrainingRunResult

logger = logging.getLogger(__name__)

METHOD_NAMES = {"sklearn": "scikit-learn", "torch": "PyTorch"}
TYPE_NAMES = {"none": "Without grid search", "grid": "With grid search"}


class SchemaError(IOError):
    """Загруженная таблица не совпадает с ожидаемой схемой covtype."""


def fetch_covtype(
    url: str, cache_dir: Optional[str] = None, timeout: float = 60.0
) -> Union[str, io.BytesIO]:
    """Скачивает covtype.data.gz одним GET-запросом, без повторных попыток.

    С ``cache_dir`` файл сохраняется на диск и при следующем запуске
    берётся оттуда; без него возвращается буфер в памяти.
    """
    path = os.path.join(cache_dir, os.path.basename(url)) if cache_dir else None
    if path and os.path.exists(path):
        logger.info("Using cached dataset %s", path)
        return path

    logger.info("Downloading %s", url)
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    if path is None:
        return io.BytesIO(response.content)

    os.makedirs(cache_dir, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=cache_dir, suffix=".part")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(response.content)
        os.replace(tmp_path, path)
    except BaseException:
        os.unlink(tmp_path)
        raise
    logger.info("Saved %d bytes to %s", len(response.content), path)
    return path


def read_covtype(
    source: Union[str, io.BytesIO],
    columns: Sequence[str] = COLUMNS,
    compression: str = "gzip",
) -> pd.DataFrame:
    """Читает CSV без заголовка и проверяет число и тип столбцов."""
    try:
        df = pd.read_csv(source, header=None, compression=compression)
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as exc:
        raise SchemaError(f"Malformed dataset: {exc}") from exc
    if df.shape[1] != len(columns):
        raise SchemaError(f"Expected {len(columns)} columns, got {df.shape[1]}")
    non_numeric = [
        i for i in df.columns if not pd.api.types.is_numeric_dtype(df[i])
    ]
    if non_numeric:
        raise SchemaError(f"Non-numeric values in columns {non_numeric}")
    df.columns = list(columns)
    return df


def downsample(df: pd.DataFrame, factor: int, random_state: int = RANDOM_STATE) -> pd.DataFrame:
    """Равномерная выборка без возвращения: 1/factor строк исходной таблицы."""
    if factor < 1:
        raise ValueError(f"Downsampling factor must be >= 1, got {factor}")
    n_rows = int(round(len(df) / factor))
    return df.sample(n=n_rows, replace=False, random_state=random_state)


def stratified_split(
    df: pd.DataFrame,
    label: str = LABEL_COLUMN,
    train_fraction: float = 0.8,
    random_state: int = RANDOM_STATE,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Делит строки на train/test с сохранением долей классов."""
    if label not in df.columns:
        raise ValueError(f"Label column {label!r} is missing")
    if df[label].nunique() < 2:
        raise ValueError(
            f"Stratification needs at least two classes in {label!r}, "
            f"got {df[label].nunique()}"
        )
    train, test = train_test_split(
        df,
        train_size=train_fraction,
        stratify=df[label],
        random_state=random_state,
    )
    return train, test


def standardize(
    df: pd.DataFrame,
    columns: Iterable[str] = FEATURE_COLUMNS,
    scaler: Optional[StandardScaler] = None,
) -> Tuple[pd.DataFrame, StandardScaler]:
    """Z-преобразование числовых столбцов.

    Если ``scaler`` не передан, статистики считаются по самому ``df``.
    Столбцы с нулевой дисперсией становятся нулями.
    """
    columns = list(columns)
    out = df.copy()
    if scaler is None:
        scaler = StandardScaler().fit(out[columns])
    out[columns] = scaler.transform(out[columns])
    return out, scaler


def cast_label(df: pd.DataFrame, label: str = LABEL_COLUMN) -> pd.DataFrame:
    """Приводит метку к категориальному типу: один уровень на класс."""
    out = df.copy()
    out[label] = pd.Categorical(out[label], categories=sorted(out[label].unique()))
    return out


def preprocess(
    df: pd.DataFrame,
    label: str = LABEL_COLUMN,
    columns: Iterable[str] = FEATURE_COLUMNS,
    train_fraction: float = 0.8,
    random_state: int = RANDOM_STATE,
    scale_after_split: bool = False,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Масштабирование, приведение метки и разбиение на train/test.

    По умолчанию статистики масштабирования считаются по всей выборке до
    разбиения, как в исходном отчёте (test влияет на статистики train).
    ``scale_after_split=True`` считает их только по train.
    """
    columns = list(columns)
    df = cast_label(df, label)
    if not scale_after_split:
        df, _ = standardize(df, columns)
        return stratified_split(df, label, train_fraction, random_state)

    train, test = stratified_split(df, label, train_fraction, random_state)
    train, scaler = standardize(train, columns)
    test, _ = standardize(test, columns, scaler=scaler)
    return train, test


def comparison_table(results: List[TrainingRunResult]) -> pd.DataFrame:
    """Длинная таблица (Method, Type, Time) из четырёх прогонов."""
    expected = {(f, m) for f in FRAMEWORKS for m in SEARCH_MODES}
    keys = [(r.framework, r.search_mode) for r in results]
    if len(results) != len(expected) or set(keys) != expected:
        raise ValueError(
            f"Expected one result per (framework, mode) in {sorted(expected)}, "
            f"got {keys}"
        )
    if any(r.elapsed_sec < 0 for r in results):
        raise ValueError("Elapsed time must be non-negative")
    return pd.DataFrame(
        [
            {
                "Method": METHOD_NAMES[r.framework],
                "Type": TYPE_NAMES[r.search_mode],
                "Time": r.elapsed_sec,
            }
            for r in results
        ]
    )
