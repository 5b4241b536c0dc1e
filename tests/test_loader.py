import gzip
import io

import pytest
import requests

from covertype.ann_timing import utils
from covertype.ann_timing.config import COLUMNS, LABEL_COLUMN
from covertype.ann_timing.utils import SchemaError, downsample, fetch_covtype, read_covtype


class FakeResponse:
    def __init__(self, content: bytes, status_code: int = 200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


def test_read_covtype_applies_schema(covtype_gz):
    df = read_covtype(covtype_gz)
    assert list(df.columns) == COLUMNS
    assert df.shape == (1000, 55)
    assert set(df[LABEL_COLUMN]) == {1, 2, 3}


def test_read_covtype_rejects_wrong_width(tmp_path, covtype_like):
    path = tmp_path / "narrow.csv.gz"
    covtype_like.iloc[:, :10].to_csv(path, header=False, index=False, compression="gzip")
    with pytest.raises(SchemaError):
        read_covtype(str(path))
    assert issubclass(SchemaError, IOError)


def test_downsample_keeps_one_in_fifty(covtype_like):
    sampled = downsample(covtype_like, 50, random_state=123)
    assert len(sampled) == 20
    assert sampled.index.is_unique
    assert set(sampled.index) <= set(covtype_like.index)
    again = downsample(covtype_like, 50, random_state=123)
    assert list(sampled.index) == list(again.index)


def test_downsample_rejects_bad_factor(covtype_like):
    with pytest.raises(ValueError):
        downsample(covtype_like, 0)


def test_fetch_without_cache_returns_buffer(monkeypatch, covtype_like):
    buf = io.BytesIO()
    covtype_like.to_csv(buf, header=False, index=False, compression="gzip")
    calls = []

    def fake_get(url, timeout):
        calls.append(url)
        return FakeResponse(buf.getvalue())

    monkeypatch.setattr(utils.requests, "get", fake_get)
    source = fetch_covtype("https://example.org/covtype.data.gz")
    assert isinstance(source, io.BytesIO)
    assert read_covtype(source).shape == (1000, 55)
    assert len(calls) == 1


def test_fetch_uses_cache_on_second_call(monkeypatch, tmp_path):
    calls = []

    def fake_get(url, timeout):
        calls.append(url)
        return FakeResponse(b"payload")

    monkeypatch.setattr(utils.requests, "get", fake_get)
    url = "https://example.org/covtype.data.gz"
    first = fetch_covtype(url, cache_dir=str(tmp_path / "cache"))
    second = fetch_covtype(url, cache_dir=str(tmp_path / "cache"))
    assert first == second
    assert len(calls) == 1
    with open(first, "rb") as fh:
        assert fh.read() == b"payload"


def test_fetch_surfaces_http_errors(monkeypatch):
    monkeypatch.setattr(
        utils.requests, "get", lambda url, timeout: FakeResponse(b"", status_code=404)
    )
    with pytest.raises(IOError):
        fetch_covtype("https://example.org/missing.gz")


def test_read_covtype_rejects_empty_file(tmp_path):
    path = tmp_path / "empty.gz"
    with gzip.open(path, "wb"):
        pass
    with pytest.raises(SchemaError):
        read_covtype(str(path))


def test_read_covtype_rejects_ragged_rows(tmp_path, covtype_like):
    rows = covtype_like.head(3).to_csv(header=False, index=False).splitlines()
    rows[1] += ",7"
    path = tmp_path / "ragged.gz"
    with gzip.open(path, "wt") as fh:
        fh.write("\n".join(rows) + "\n")
    with pytest.raises(SchemaError):
        read_covtype(str(path))


def test_read_covtype_rejects_non_numeric_values(tmp_path, covtype_like):
    path = tmp_path / "with_header.gz"
    covtype_like.head(5).to_csv(path, header=True, index=False, compression="gzip")
    with pytest.raises(IOError):
        read_covtype(str(path))


def test_failed_cache_write_leaves_no_file(monkeypatch, tmp_path):
    monkeypatch.setattr(
        utils.requests, "get", lambda url, timeout: FakeResponse(b"payload")
    )
    monkeypatch.setattr(utils.os, "replace", _raise_oserror)
    cache_dir = tmp_path / "cache"
    with pytest.raises(OSError):
        fetch_covtype("https://example.org/covtype.data.gz", cache_dir=str(cache_dir))
    assert list(cache_dir.iterdir()) == []


def _raise_oserror(src, dst):
    raise OSError("disk full")
