from pathlib import Path

import pytest

from feerecon.config import DEFAULT_DB_PATH, ReconConfig, load_config, resolve_db_path
from feerecon.errors import ConfigError


def _pyproject(tmp_path, body: str) -> Path:
    path = tmp_path / "pyproject.toml"
    path.write_text(body)
    return path


class TestLoadConfig:
    """Tests for layered configuration."""

    def test_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.toml", environ={})
        assert config == ReconConfig()

    def test_pyproject_then_env_then_overrides(self, tmp_path):
        path = _pyproject(
            tmp_path,
            "[tool.feerecon]\n"
            "confidence_threshold = 0.7\n"
            "max_retries = 5\n"
            'reference_patterns = ["INV\\\\d{4}"]\n'
            'db_path = "ignored.db"\n',
        )
        environ = {"FEERECON_MAX_RETRIES": "2", "FEERECON_REFERENCE_DIGIT_WIDTH": "3"}
        config = load_config(path, environ, confidence_threshold=0.8, delimiter=None)
        assert config.confidence_threshold == 0.8
        assert config.max_retries == 2
        assert config.reference_digit_width == 3
        assert config.reference_patterns == (r"INV\d{4}",)
        assert config.delimiter is None

    def test_env_list_and_tab(self, tmp_path):
        environ = {
            "FEERECON_REFERENCE_PATTERNS": r"[A-Z]{3}\d{3},\d{4}",
            "FEERECON_DELIMITER": "\\t",
            "FEERECON_DAY_FIRST": "no",
        }
        config = load_config(tmp_path / "missing.toml", environ)
        assert config.reference_patterns == (r"[A-Z]{3}\d{3}", r"\d{4}")
        assert config.delimiter == "\t"
        assert config.day_first is False

    def test_unknown_key(self, tmp_path):
        path = _pyproject(tmp_path, "[tool.feerecon]\nthreshold = 0.5\n")
        with pytest.raises(ConfigError, match="Unknown"):
            load_config(path, environ={})

    def test_invalid_threshold(self, tmp_path):
        with pytest.raises(ConfigError, match="confidence_threshold"):
            load_config(tmp_path / "missing.toml", environ={}, confidence_threshold=1.5)

    def test_bad_number(self, tmp_path):
        with pytest.raises(ConfigError, match="max_retries"):
            load_config(tmp_path / "missing.toml", environ={"FEERECON_MAX_RETRIES": "many"})

    def test_bad_pattern(self):
        with pytest.raises(ConfigError, match="does not compile"):
            ReconConfig(reference_patterns=("[A-Z",))

    def test_invalid_toml(self, tmp_path):
        path = _pyproject(tmp_path, "[tool.feerecon\n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path, environ={})


class TestResolveDbPath:
    """Tests for database path resolution."""

    def test_explicit_wins(self, tmp_path):
        assert resolve_db_path("x.db", environ={"FEERECON_DB": "y.db"}) == Path("x.db")

    def test_env(self, tmp_path):
        path = _pyproject(tmp_path, '[tool.feerecon]\ndb_path = "z.db"\n')
        assert resolve_db_path(None, path, {"FEERECON_DB": "y.db"}) == Path("y.db")

    def test_pyproject(self, tmp_path):
        path = _pyproject(tmp_path, '[tool.feerecon]\ndb_path = "z.db"\n')
        assert resolve_db_path(None, path, {}) == Path("z.db")

    def test_default(self, tmp_path):
        assert resolve_db_path(None, tmp_path / "missing.toml", {}) == Path(DEFAULT_DB_PATH)
