import io
import json
from pathlib import Path

import pytest

from macocr import batch_worker, parallel
from macocr.batch_worker import read_input_file, run_file, text_output_path
from macocr.config import BatchConfig
from macocr.exceptions import FileProcessingError, PayloadTooLargeError
from macocr.parallel import OCRRunner

from conftest import MustNotRunEngine, StubEngine, make_image_bytes, rect_observation


@pytest.fixture
def image_dir(tmp_path):
    (tmp_path / "a.png").write_bytes(make_image_bytes(200, 100))
    (tmp_path / "b.png").write_bytes(b"this is not an image")
    (tmp_path / "c.jpg").write_bytes(make_image_bytes(64, 32, fmt="JPEG"))
    return tmp_path


def _paths(directory: Path):
    return [directory / "a.png", directory / "b.png", directory / "c.jpg"]


def test_bad_file_does_not_stop_the_batch(image_dir, stub_engine, capsys):
    config = BatchConfig(export_txt=True, show_progress=False)
    report = OCRRunner(config, engine=stub_engine).run(_paths(image_dir))

    assert report.processed == 3
    assert report.failed == 1
    assert report.exit_code == 1
    failure = report.failures[0]
    assert failure.source_path == str(image_dir / "b.png")
    assert failure.error_kind == "InvalidImage"

    assert (image_dir / "a.txt").read_text(encoding="utf-8") == "Hello\nWorld"
    assert (image_dir / "c.txt").read_text(encoding="utf-8") == "Hello\nWorld"
    assert not (image_dir / "b.txt").exists()

    out, err = capsys.readouterr()
    assert f"{image_dir / 'a.png'} --> {image_dir / 'a.txt'}" in out
    assert f"{image_dir / 'b.png'}: InvalidImage" in err


def test_stdout_mode_prints_text_in_input_order(image_dir, stub_engine):
    paths = [image_dir / "c.jpg", image_dir / "a.png"]
    out = io.StringIO()
    report = OCRRunner(BatchConfig(show_progress=False), engine=stub_engine, stdout=out).run(paths)

    assert report.exit_code == 0
    assert out.getvalue() == "Hello\nWorld\nHello\nWorld\n"
    assert not (image_dir / "a.txt").exists()
    assert [call[1:] for call in stub_engine.calls] == [(64, 32), (200, 100)]


def test_empty_recognition_writes_empty_file(image_dir):
    config = BatchConfig(export_txt=True, show_progress=False)
    report = OCRRunner(config, engine=StubEngine([]), stdout=io.StringIO()).run([image_dir / "a.png"])
    assert report.exit_code == 0
    assert (image_dir / "a.txt").read_text(encoding="utf-8") == ""


def test_no_files_is_a_clean_run(stub_engine):
    report = OCRRunner(BatchConfig(show_progress=False), engine=stub_engine).run([])
    assert (report.processed, report.failed, report.exit_code) == (0, 0, 0)


def test_oversize_file_never_reaches_engine(tmp_path):
    big = tmp_path / "big.png"
    big.write_bytes(make_image_bytes(200, 100))
    outcome = run_file(big, MustNotRunEngine(), export_txt=False, max_file_bytes=10)
    assert outcome.ok is False
    assert outcome.error_kind == "PayloadTooLarge"


def test_missing_file_is_io_failure(tmp_path, stub_engine):
    outcome = run_file(tmp_path / "nope.png", stub_engine, export_txt=False, max_file_bytes=1024)
    assert outcome.ok is False
    assert outcome.error_kind == "IOFailure"
    assert stub_engine.calls == []


def test_read_input_file_limits(tmp_path):
    path = tmp_path / "x.bin"
    path.write_bytes(b"12345")
    assert read_input_file(path, 5) == b"12345"
    with pytest.raises(PayloadTooLargeError):
        read_input_file(path, 4)
    with pytest.raises(FileProcessingError):
        read_input_file(tmp_path / "missing.bin", 5)


@pytest.mark.parametrize("name, expected", [
    ("scan.png", "scan.txt"),
    ("archive.tar.jpg", "archive.tar.txt"),
    ("noext", "noext.txt"),
])
def test_text_output_path_is_sibling(tmp_path, name, expected):
    assert text_output_path(tmp_path / name) == tmp_path / expected


def test_failures_are_appended_to_error_log(image_dir, stub_engine):
    log_path = image_dir / "logs" / "errors.jsonl"
    config = BatchConfig(error_log_path=log_path, show_progress=False)
    OCRRunner(config, engine=stub_engine, stdout=io.StringIO()).run(_paths(image_dir))
    OCRRunner(config, engine=stub_engine, stdout=io.StringIO()).run([image_dir / "b.png"])

    entries = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert len(entries) == 2
    assert all(e["source_path"] == str(image_dir / "b.png") for e in entries)
    assert all(e["error_kind"] == "InvalidImage" for e in entries)
    assert {"timestamp", "error_reason"} <= set(entries[0])


def test_batch_config_from_cli_values(tmp_path):
    config = BatchConfig.from_dict({
        "export_txt": True,
        "num_workers": 3,
        "languages": None,
        "ocr_backend": "tesseract",
        "ocr_backend_kwargs": {"psm": 6},
        "error_log_path": str(tmp_path / "errors.jsonl"),
    })
    assert config.error_log_path == tmp_path / "errors.jsonl"
    assert config.languages == []
    assert (config.num_workers, config.ocr_backend) == (3, "tesseract")


def test_batch_config_languages_feed_backend_kwargs():
    assert BatchConfig(languages=["en-US"]).backend_kwargs() == {"languages": ["en-US"]}
    explicit = BatchConfig(languages=["en-US"], ocr_backend_kwargs={"lang": "fra"})
    assert explicit.backend_kwargs() == {"lang": "fra"}


def test_batch_config_rejects_zero_workers():
    with pytest.raises(ValueError):
        BatchConfig.from_dict({"num_workers": 0})


def test_backend_defaults_to_environment(monkeypatch):
    monkeypatch.setenv("MACOCR_BACKEND", "tesseract")
    assert BatchConfig().ocr_backend == "tesseract"
    monkeypatch.delenv("MACOCR_BACKEND")
    assert BatchConfig().ocr_backend == "vision"


# --- worker pool and shutdown ---

def test_worker_pool_keeps_input_order_and_isolates_failures(image_dir):
    config = BatchConfig(
        num_workers=2,
        ocr_backend="conftest.StubEngine",
        ocr_backend_kwargs={"observations": [rect_observation("pooled", 0.1, 0.1, 0.5, 0.5)]},
        show_progress=False,
    )
    out = io.StringIO()
    paths = _paths(image_dir) + [image_dir / "a.png"]
    report = OCRRunner(config, stdout=out).run(paths)

    assert report.processed == 4
    assert [(f.source_path, f.error_kind) for f in report.failures] == [(str(image_dir / "b.png"), "InvalidImage")]
    assert report.exit_code == 1
    assert out.getvalue() == "pooled\npooled\npooled\n"


def test_worker_initializer_builds_the_engine(tmp_path, monkeypatch):
    monkeypatch.setattr(batch_worker, "ocr_engine", None)
    path = tmp_path / "one.png"
    path.write_bytes(make_image_bytes())
    task = {"source_path": str(path), "export_txt": True, "max_file_bytes": 1024 * 1024}

    with pytest.raises(RuntimeError):
        batch_worker.process_file_task(task)

    batch_worker.initialize_batch_worker(
        None, "conftest.StubEngine", {"observations": [rect_observation("worker", 0.1, 0.1, 0.5, 0.5)]},
    )
    outcome = batch_worker.process_file_task(task)
    assert outcome.ok is True
    assert outcome.output_path == str(tmp_path / "one.txt")
    assert (tmp_path / "one.txt").read_text(encoding="utf-8") == "worker"


class ShutdownAfterFirstEngine(StubEngine):
    """Behaves like a SIGINT arriving while the first file is recognized."""

    def recognize(self, data, width, height):
        parallel.SHUTDOWN_REQUESTED = True
        return super().recognize(data, width, height)


def test_shutdown_cancels_remaining_files(image_dir, monkeypatch):
    monkeypatch.setattr(parallel, "SHUTDOWN_REQUESTED", False)
    log_path = image_dir / "errors.jsonl"
    engine = ShutdownAfterFirstEngine([rect_observation("first", 0.1, 0.1, 0.5, 0.5)])
    config = BatchConfig(error_log_path=log_path, show_progress=False)
    out = io.StringIO()

    report = OCRRunner(config, engine=engine, stdout=out).run(
        [image_dir / "a.png", image_dir / "c.jpg", image_dir / "b.png"]
    )

    assert len(engine.calls) == 1
    assert out.getvalue() == "first\n"
    assert report.processed == 1
    assert [(f.source_path, f.error_kind) for f in report.failures] == [
        (str(image_dir / "c.jpg"), "Cancelled"),
        (str(image_dir / "b.png"), "Cancelled"),
    ]
    assert report.exit_code == 1
    kinds = [json.loads(line)["error_kind"] for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert kinds == ["Cancelled", "Cancelled"]


def test_new_run_clears_a_previous_shutdown(image_dir, stub_engine, monkeypatch):
    monkeypatch.setattr(parallel, "SHUTDOWN_REQUESTED", True)
    report = OCRRunner(BatchConfig(show_progress=False), engine=stub_engine, stdout=io.StringIO()).run(
        [image_dir / "a.png"]
    )
    assert report.exit_code == 0
