import argparse

import pytest

import web2book
from conftest import make_spec
from core.models import JobReport, VolumeResult
from core.pacing import NoDelayPacer


def write(path, text):
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_missing_global_config_fails(tmp_path):
    assert web2book.main(["--config", str(tmp_path / "missing.properties")]) == 1


def test_no_books_configured_fails(tmp_path):
    config = write(tmp_path / "web2book.properties", "default.output.dir=out\n")
    assert web2book.main(["--config", config]) == 1


def test_invalid_book_counts_as_failure(tmp_path, monkeypatch):
    book = write(tmp_path / "book.properties", "starting.url=https://comic.test/manga\n")
    config = write(tmp_path / "web2book.properties", f"book.config.1={book}\n")
    monkeypatch.setattr(web2book, "install_signal_handlers", lambda pacer: None)

    assert web2book.main(["--config", config]) == 1


def test_apply_overrides(tmp_path):
    spec = make_spec(tmp_path)
    args = argparse.Namespace(format="epub", regenerate=True, thinking_time=-5)

    changed = web2book.apply_overrides(spec, args)

    assert changed.output_format == "epub"
    assert changed.regenerate_existing is True
    assert changed.thinking_time_ms == 0
    untouched = web2book.apply_overrides(spec, argparse.Namespace(format=None, regenerate=False, thinking_time=None))
    assert untouched is spec


def test_unknown_format_is_rejected():
    with pytest.raises(SystemExit):
        web2book.main(["--format", "mobi"])


def test_book_with_failed_volume_counts_as_failure(tmp_path, monkeypatch):
    spec = make_spec(tmp_path)
    report = JobReport(title="Manga", volumes=[VolumeResult(1, 1, 2, [1, 2], error="boom")])

    class FailingJob:
        def __init__(self, spec, **kwargs):
            pass

        def run(self):
            return report

    monkeypatch.setattr(web2book, "load_book_spec", lambda path, props: spec)
    monkeypatch.setattr(web2book, "BookJob", FailingJob)
    args = argparse.Namespace(format=None, regenerate=False, thinking_time=None)

    reports, failed = web2book.run_books(["book.properties"], {}, args, NoDelayPacer(), None)

    assert reports == [report]
    assert failed == 1
