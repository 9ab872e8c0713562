import tomllib
from pathlib import Path

import pytest

from shepherd import __version__
from shepherd.config import ShepherdConfig, dumps_toml, load_config, save_config
from shepherd.errors import ConfigError
from shepherd.models import CommitStrategy


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "shepherd.toml"
    config = ShepherdConfig.default()
    config.project.name = "shepherd-test"
    config.project.docs_dir = "design-docs"
    config.backend.primary = "codex"
    config.backend.fallback = "openai"
    config.backend.max_retries = 3
    config.workflow.commit_strategy = "per-phase"
    config.workflow.max_revision_attempts = 5
    config.workflow.review_perspectives = ["security", "operability"]
    config.gate.high_threshold = 85

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "shepherd-test"
    assert loaded.project.docs_dir == "design-docs"
    assert loaded.backend.primary == "codex"
    assert loaded.backend.fallback == "openai"
    assert loaded.backend.max_retries == 3
    assert loaded.backend.retry_backoff_seconds == 0.5
    assert loaded.commit_strategy is CommitStrategy.PER_PHASE
    assert loaded.workflow.max_revision_attempts == 5
    assert loaded.workflow.review_perspectives == ["security", "operability"]
    assert loaded.gate.high_threshold == 85
    assert loaded.to_dict() == config.to_dict()


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.to_dict() == ShepherdConfig.default().to_dict()


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(ShepherdConfig.default())

    for section in ("[project]", "[backend]", "[agents]", "[workflow]", "[gate]", "[state]"):
        assert section in rendered
    assert "retry_backoff_seconds = 0.5" in rendered
    assert 'commit_strategy = "per-task"' in rendered
    assert 'review_perspectives = ["general"]' in rendered


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ('[workflow]\ncommit_strategy = "nightly"\n', "commit_strategy"),
        ('[backend]\nprimary = "gemini"\n', "backend.primary"),
        ("[workflow]\nmax_revision_attempts = 0\n", "max_revision_attempts"),
        ("[workflow]\nreview_perspectives = []\n", "review_perspectives"),
        ("[gate]\nmedium_threshold = 90\n", "gate thresholds"),
        ("[gate]\nunknown = 1\n", "Unknown configuration key"),
        ("[workflow\n", "Could not parse"),
    ],
)
def test_invalid_values_raise_config_error(tmp_path: Path, body: str, message: str) -> None:
    config_path = tmp_path / "shepherd.toml"
    config_path.write_text(body, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config(config_path)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
