"""Tests for configuration loading."""

import logging

import pytest

from pinix.config import Config, load_config


def test_defaults_without_file(tmp_path):
    config = load_config(tmp_path / "missing.toml", environ={})
    assert config.max_jobs == 4
    assert config.fetch_retries == 3
    assert config.store_root.endswith("pinix")


def test_file_then_environment(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('store_root = "/srv/pinix"\nmax_jobs = 8\nfetch_backoff = 2\nsandbox = true\n')
    config = load_config(path, environ={"PINIX_MAX_JOBS": "2", "PINIX_CHECK": "yes"})
    assert config.store_root == "/srv/pinix"
    assert config.max_jobs == 2
    assert config.fetch_backoff == 2.0
    assert config.sandbox is True
    assert config.check is True


def test_keep_failed_setting(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("keep_failed = true\n")
    assert load_config(path, environ={}).keep_failed is True
    assert load_config(tmp_path / "missing.toml", environ={}).keep_failed is False


def test_unknown_setting_is_ignored_with_warning(tmp_path, caplog):
    path = tmp_path / "config.toml"
    path.write_text("colour = 'blue'\n")
    with caplog.at_level(logging.WARNING, logger="pinix.config"):
        load_config(path, environ={})
    assert "colour" in caplog.text


@pytest.mark.parametrize("content,environ,match", [
    ("max_jobs = 'many'\n", {}, "max_jobs"),
    ("sandbox = 1\n", {}, "sandbox"),
    ("", {"PINIX_SANDBOX": "maybe"}, "PINIX_SANDBOX"),
    ("", {"PINIX_FETCH_TIMEOUT": "soon"}, "PINIX_FETCH_TIMEOUT"),
])
def test_bad_values(tmp_path, content, environ, match):
    path = tmp_path / "config.toml"
    path.write_text(content)
    with pytest.raises(ValueError, match=match):
        load_config(path, environ=environ)


def test_invalid_job_count():
    with pytest.raises(ValueError, match="max_jobs"):
        Config(max_jobs=0)


def test_overrides_skip_none():
    config = Config(store_root="/a").with_overrides(store_root=None, max_jobs=1)
    assert config.store_root == "/a"
    assert config.max_jobs == 1
