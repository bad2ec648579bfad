from __future__ import annotations

import threading
from pathlib import Path
from typing import List, Tuple

import pytest

from dbbench.storage import ArtifactUploader, UploadCancelled, UploadError


class FlakyStore:
    """Fails the first ``failures`` uploads, then succeeds."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls: List[Tuple[str, Path, str]] = []

    def upload_file(self, bucket: str, local_path: Path, remote_path: str) -> None:
        self.calls.append((bucket, local_path, remote_path))
        if len(self.calls) <= self.failures:
            raise ConnectionError(f"attempt {len(self.calls)} refused")


@pytest.fixture
def artifact(tmp_path: Path) -> Path:
    path = tmp_path / "client-latency-distribution-summary.csv"
    path.write_text("TOTAL-SECONDS,1.0000\n", encoding="utf-8")
    return path


def test_success_after_twenty_nine_failures(artifact: Path):
    store = FlakyStore(failures=29)
    uploader = ArtifactUploader(store, bucket="dbtester-results", retry_delay=0)

    remote = uploader.upload(artifact, "bench-01-etcd")

    assert len(store.calls) == 30
    assert remote == "bench-01-etcd-client-latency-distribution-summary.csv"


def test_error_surfaces_after_every_attempt_fails(artifact: Path):
    store = FlakyStore(failures=30)
    uploader = ArtifactUploader(store, bucket="dbtester-results", retry_delay=0)

    with pytest.raises(UploadError) as excinfo:
        uploader.upload(artifact)

    assert len(store.calls) == 30
    assert isinstance(excinfo.value.__cause__, ConnectionError)


def test_cancel_interrupts_retry_delay(artifact: Path):
    cancel = threading.Event()
    store = FlakyStore(failures=30)
    uploader = ArtifactUploader(store, bucket="b", retry_delay=30.0, cancel=cancel)
    timer = threading.Timer(0.2, cancel.set)
    timer.start()

    try:
        with pytest.raises(UploadCancelled):
            uploader.upload(artifact)
    finally:
        timer.cancel()

    assert len(store.calls) == 1


def test_missing_file_is_not_retried(tmp_path: Path):
    store = FlakyStore(failures=0)
    uploader = ArtifactUploader(store, bucket="b", retry_delay=0)

    with pytest.raises(FileNotFoundError):
        uploader.upload(tmp_path / "absent.csv")

    assert store.calls == []


def test_destination_naming():
    uploader = ArtifactUploader(FlakyStore(0), bucket="b", subdirectory="/2017Q1-00-etcd/")

    assert uploader.destination("/tmp/x/summary.csv", "bench") == "2017Q1-00-etcd/bench-summary.csv"
    assert uploader.destination("/tmp/x/bench-summary.csv", "bench") == "2017Q1-00-etcd/bench-summary.csv"
    assert ArtifactUploader(FlakyStore(0), bucket="b").destination("a/b.csv") == "b.csv"


def test_upload_many_reports_each_path(tmp_path: Path):
    good = tmp_path / "good.csv"
    good.write_text("a\n", encoding="utf-8")
    missing = tmp_path / "missing.csv"
    uploader = ArtifactUploader(FlakyStore(0), bucket="b", retry_delay=0)

    results = uploader.upload_many([good, missing])

    assert results[good] is None
    assert isinstance(results[missing], FileNotFoundError)


def test_attempts_must_be_positive():
    with pytest.raises(ValueError):
        ArtifactUploader(FlakyStore(0), bucket="b", attempts=0)
