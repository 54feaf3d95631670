import argparse
import logging

import pytest

from macocr import cli
from macocr.config import parse_auth
from macocr.exceptions import RecognitionEngineError
from macocr.ocr_backends import BaseOCREngine, get_engine, normalize_backend_alias

from conftest import StubEngine, make_image_bytes, rect_observation


@pytest.fixture(autouse=True)
def restore_macocr_logger():
    # main() routes the package logger into its own queue
    log = logging.getLogger("macocr")
    saved = (list(log.handlers), log.propagate, log.level)
    yield
    log.handlers[:] = saved[0]
    log.propagate = saved[1]
    log.setLevel(saved[2])


@pytest.fixture
def fake_engine(monkeypatch):
    engine = StubEngine([rect_observation("stub text", 0.0, 0.0, 1.0, 1.0)])
    monkeypatch.setattr(cli, "get_engine", lambda name, kwargs: engine)
    return engine


@pytest.mark.parametrize("raw, expected", [
    ('{"languages": ["en"], "psm": 6}', {"languages": ["en"], "psm": 6}),
    ("{'framework': 'livetext'}", {"framework": "livetext"}),
    ("languages=en,fr;psm=6;gpu=false", {"languages": ["en", "fr"], "psm": 6, "gpu": False}),
    ("'psm=11'", {"psm": 11}),
    ("", {}),
    ({"a": 1}, {"a": 1}),
])
def test_parse_backend_kwargs(raw, expected):
    assert cli._parse_backend_kwargs(raw) == expected


def test_parse_backend_kwargs_rejects_nonsense():
    with pytest.raises(ValueError):
        cli._parse_backend_kwargs("just words")


def test_normalize_common_backend_kwargs():
    out = cli._normalize_common_backend_kwargs({"Recognition-Level": "fast", "lang": "en-US, zh-Hans"})
    assert out == {"recognition_level": "fast", "languages": ["en-US", "zh-Hans"]}


@pytest.mark.parametrize("value, expected", [("512", 512), ("4k", 4096), ("100M", 100 * 1024 ** 2), ("1gb", 1024 ** 3)])
def test_size_arg(value, expected):
    assert cli._size_arg(value) == expected


def test_size_arg_rejects_garbage():
    with pytest.raises(argparse.ArgumentTypeError):
        cli._size_arg("lots")


@pytest.mark.parametrize("value", ["nocolon", "a:b:c", ":pass", "user:"])
def test_parse_auth_rejects_malformed(value):
    with pytest.raises(ValueError):
        parse_auth(value)


def test_parse_auth():
    assert parse_auth("admin:s3cret") == ("admin", "s3cret")
    assert parse_auth("") is None


def test_ocr_and_server_are_exclusive():
    with pytest.raises(SystemExit) as info:
        cli.build_parser().parse_args(["-o", "-s"])
    assert info.value.code == 2


@pytest.mark.parametrize("argv", [
    [],
    ["--auth", "broken", "-s"],
    ["--workers", "0", "x.png"],
    ["--ocr-backend-kwargs", "not kwargs", "x.png"],
])
def test_usage_errors_exit_with_2(argv):
    with pytest.raises(SystemExit) as info:
        cli.main(argv)
    assert info.value.code == 2


def test_batch_run_exit_codes(tmp_path, fake_engine, capsys):
    good = tmp_path / "good.png"
    good.write_bytes(make_image_bytes(40, 20))
    bad = tmp_path / "bad.png"
    bad.write_bytes(b"nope")

    assert cli.main([str(good)]) == 0
    assert "stub text" in capsys.readouterr().out

    assert cli.main(["-o", str(good), str(bad)]) == 1
    assert (tmp_path / "good.txt").read_text(encoding="utf-8") == "stub text"
    assert not (tmp_path / "bad.txt").exists()


def test_unavailable_engine_is_fatal(tmp_path, monkeypatch):
    def unavailable(name, kwargs):
        raise RecognitionEngineError("no engine here")

    monkeypatch.setattr(cli, "get_engine", unavailable)
    path = tmp_path / "a.png"
    path.write_bytes(make_image_bytes())
    assert cli.main([str(path)]) == 1
    assert not (tmp_path / "a.txt").exists()


def test_languages_flow_into_backend_kwargs(tmp_path, monkeypatch):
    seen = {}

    def capture(name, kwargs):
        seen.update(name=name, kwargs=kwargs)
        return StubEngine([])

    monkeypatch.setattr(cli, "get_engine", capture)
    monkeypatch.delenv("MACOCR_BACKEND", raising=False)
    path = tmp_path / "a.png"
    path.write_bytes(make_image_bytes())

    assert cli.main(["-l", "en-US", "fr-FR", "--ocr-backend-kwargs", "framework=livetext", str(path)]) == 0
    assert seen["name"] == "vision"
    assert seen["kwargs"] == {"framework": "livetext", "languages": ["en-US", "fr-FR"]}


# --- backend registry ---

def test_aliases_resolve_case_insensitively():
    assert normalize_backend_alias("LiveText").endswith("vision_backend.VisionOCREngine")
    assert normalize_backend_alias("tess").endswith("tesseract_backend.TesseractOCREngine")
    assert normalize_backend_alias("my.pkg.Engine") == "my.pkg.Engine"


def test_get_engine_from_dotted_path():
    engine = get_engine("conftest.StubEngine", {"observations": []})
    assert isinstance(engine, BaseOCREngine)


@pytest.mark.parametrize("name", ["nodots", "conftest.NoSuchEngine", "conftest.make_image_bytes"])
def test_get_engine_rejects_bad_names(name):
    with pytest.raises(ValueError):
        get_engine(name)


def test_get_engine_missing_module_is_engine_error():
    with pytest.raises(RecognitionEngineError):
        get_engine("macocr_not_installed_anywhere.Engine")
