import pathlib

import pytest

from pactum.config import PactumConfig, load_config
from pactum.errors import ConfigError, ConfigValidationError


def test_defaults(pactum_home, monkeypatch):
    monkeypatch.delenv("PACTUM_HOME")
    cfg = PactumConfig()
    assert cfg.home == pathlib.Path("~/.pactum").expanduser()
    assert cfg.tools.git.get() == "git"
    assert cfg.compiler.font.get() == "Helvetica"
    assert cfg.compiler.pdf_engine.get() == "tectonic"
    assert cfg.http.timeout_seconds.get() == 60.0
    assert cfg.repository.default_branch.get() == ""
    assert cfg.validate() == []


def test_profile_paths(pactum_home):
    cfg = load_config()
    assert cfg.home == pactum_home
    assert cfg.templates_cache_dir == pactum_home / "templates"
    assert cfg.mirrors_dir == pactum_home / "repos"


def test_precedence_env_over_files(pactum_home, tmp_path, monkeypatch):
    (tmp_path / "pactum.yaml").write_text("tools:\n  git: /opt/git\nhttp:\n  timeout_seconds: 5\n", encoding="utf-8")
    pactum_home.mkdir(parents=True)
    (pactum_home / "config.yaml").write_text("tools:\n  git: /usr/local/bin/git\n", encoding="utf-8")

    cfg = load_config()
    assert cfg.tools.git.get() == "/usr/local/bin/git"
    assert cfg.http.timeout_seconds.get() == 5
    assert len(cfg.loaded_from) == 2

    monkeypatch.setenv("PACTUM_GIT", "/env/git")
    monkeypatch.setenv("PACTUM_HTTP_TIMEOUT", "2.5")
    assert cfg.tools.git.get() == "/env/git"
    assert cfg.http.timeout_seconds.get() == 2.5


def test_explicit_config_must_exist(pactum_home, tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.yaml")


def test_unknown_key_rejected(pactum_home, tmp_path):
    p = tmp_path / "extra.yaml"
    p.write_text("tools:\n  svn: svn\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(p)


def test_invalid_value_rejected(pactum_home, tmp_path):
    p = tmp_path / "bad.yaml"
    p.write_text("logging:\n  level: chatty\n", encoding="utf-8")
    with pytest.raises(ConfigValidationError):
        load_config(p)


def test_invalid_env_value_reported_by_validate(pactum_home, monkeypatch):
    monkeypatch.setenv("PACTUM_HTTP_TIMEOUT", "-1")
    errors = PactumConfig().validate()
    assert any(e.startswith("http.timeout_seconds") for e in errors)


def test_to_dict_and_get(pactum_home):
    cfg = load_config()
    d = cfg.to_dict()
    assert d["compiler"] == {"font": "Helvetica", "pdf_engine": "tectonic"}
    assert "loaded_from" not in d
    assert cfg.get("tools.pandoc") == "pandoc"
    with pytest.raises(ConfigError):
        cfg.get("tools.nothing")
    assert "profile:" in cfg.to_yaml()
