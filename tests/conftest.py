import os
import pathlib
import shutil
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import pactum`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "git: needs a real git executable (skipped when git is not on PATH)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    have_git = shutil.which("git") is not None
    for item in items:
        if "git" in item.keywords and not have_git:
            item.add_marker(pytest.mark.skip(reason="git executable not found"))


@pytest.fixture
def pactum_home(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> pathlib.Path:
    """Isolated profile directory; no PACTUM_* settings leak in from the environment."""
    for name in list(os.environ):
        if name.startswith("PACTUM_"):
            monkeypatch.delenv(name)
    home = tmp_path / "home"
    monkeypatch.setenv("PACTUM_HOME", str(home))
    monkeypatch.chdir(tmp_path)
    return home


@pytest.fixture
def resolver(tmp_path: pathlib.Path):
    from pactum.cache import ContentCache
    from pactum.repository import RepositoryFetcher
    from pactum.templates import TemplateResolver

    return TemplateResolver(
        cache=ContentCache(tmp_path / "cache"),
        fetcher=RepositoryFetcher(tmp_path / "mirrors"),
    )
