"""CLI runner tests."""

import pytest

import crawlengine
import main
from crawlengine.crawler.spider import Spider


class ExampleSpider(Spider):
    name = "example"


def test_load_spider_class():
    assert main.load_spider_class("test_main:ExampleSpider") is ExampleSpider


@pytest.mark.parametrize("path, error", [
    ("no_colon", ValueError),
    ("test_main:", ValueError),
    ("test_main:pytest", TypeError),
])
def test_load_spider_class_rejects(path, error):
    with pytest.raises(error):
        main.load_spider_class(path)


def test_main_missing_config(tmp_path, capsys):
    code = main.main(["--spider", "test_main:ExampleSpider", "--config", str(tmp_path / "missing.yaml")])

    assert code == 1
    assert "not found" in capsys.readouterr().err


def test_main_dry_run(tmp_path, monkeypatch):
    config = tmp_path / "config.yaml"
    config.write_text(f"logging:\n  file: {tmp_path / 'logs' / 'crawl.log'}\n")
    monkeypatch.setattr(main, "setup_logging", lambda logging_config: None)

    code = main.main(["--spider", "test_main:ExampleSpider", "--config", str(config), "--dry-run"])

    assert code == 0


def test_version_flag(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main.main(["--version"])

    assert exc_info.value.code == 0
    assert capsys.readouterr().out.strip() == f"crawlengine {crawlengine.__version__}"
