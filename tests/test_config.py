"""Tests for settings loading."""
import pytest

from coldarchive.config import Settings, load_settings
from coldarchive.errors import ColdArchiveError

ENV_VARS = [
    "COLDARCHIVE_HOME",
    "COLDARCHIVE_REPOSITORY",
    "RESTIC_REPOSITORY",
    "COLDARCHIVE_PASSWORD_FILE",
    "RESTIC_PASSWORD_FILE",
    "COLDARCHIVE_RESTIC",
    "COLDARCHIVE_STORAGE_TIER",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    # setenv first so monkeypatch restores the original state afterwards,
    # including variables a .env file sets during a test
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.setenv("COLDARCHIVE_HOME", str(tmp_path / "home"))


def write_config(tmp_path, text):
    home = tmp_path / "home"
    home.mkdir(exist_ok=True)
    (home / "config.yaml").write_text(text, encoding="utf-8")


class TestLoadSettings:
    """Test load_settings()."""

    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(env_file=None)
        assert settings.config_dir == tmp_path / "home"
        assert settings.registry_path == tmp_path / "home" / "registry.yaml"
        assert settings.staging.dir_name == "_ColdArchive"
        assert settings.engine.executable == "restic"
        assert settings.cost.tier == "deep_archive"
        assert settings.archive.delete_after_archive is True

    def test_yaml_sections(self, tmp_path):
        write_config(
            tmp_path,
            "staging:\n  dir_name: .archive-queue\n"
            "engine:\n  repository: /srv/restic\n  deep_check: true\n  tags: [nas]\n"
            "cost:\n  tier: b2\n  currency: EUR\n"
            "archive:\n  delete_after_archive: false\n"
            "future_section:\n  anything: 1\n",
        )
        settings = load_settings(env_file=None)
        assert settings.staging.dir_name == ".archive-queue"
        assert settings.engine.repository == "/srv/restic"
        assert settings.engine.deep_check is True
        assert settings.engine.tags == ["nas"]
        assert settings.cost.currency == "EUR"
        assert settings.archive.delete_after_archive is False

    def test_unknown_keys_are_ignored(self, tmp_path):
        write_config(tmp_path, "engine:\n  executable: /opt/restic\n  colour: blue\n")
        assert load_settings(env_file=None).engine.executable == "/opt/restic"

    def test_environment_overrides(self, tmp_path, monkeypatch):
        write_config(tmp_path, "engine:\n  repository: /srv/restic\n")
        monkeypatch.setenv("RESTIC_REPOSITORY", "sftp:backup@host:/repo")
        monkeypatch.setenv("RESTIC_PASSWORD_FILE", "/etc/restic/pw")
        monkeypatch.setenv("COLDARCHIVE_STORAGE_TIER", "wasabi")

        settings = load_settings(env_file=None)
        assert settings.engine.repository == "sftp:backup@host:/repo"
        assert settings.engine.password_file == "/etc/restic/pw"
        assert settings.cost.tier == "wasabi"

    def test_coldarchive_variables_win(self, monkeypatch):
        monkeypatch.setenv("RESTIC_REPOSITORY", "/a")
        monkeypatch.setenv("COLDARCHIVE_REPOSITORY", "/b")
        assert load_settings(env_file=None).engine.repository == "/b"

    def test_dotenv_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("COLDARCHIVE_RESTIC=/usr/local/bin/restic\n", encoding="utf-8")
        assert load_settings(env_file=env_file).engine.executable == "/usr/local/bin/restic"

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "elsewhere.yaml"
        path.write_text("notifications:\n  enabled: false\n", encoding="utf-8")
        assert load_settings(path, env_file=None).notifications.enabled is False

    def test_bad_tier(self, tmp_path):
        write_config(tmp_path, "cost:\n  tier: floppy\n")
        with pytest.raises(ColdArchiveError):
            load_settings(env_file=None)

    def test_price_override_allows_custom_tier(self, tmp_path):
        write_config(tmp_path, "cost:\n  tier: my-minio\n  price_per_gb_month: 0.002\n")
        settings = load_settings(env_file=None)
        assert settings.cost_estimator()(1024 ** 3) == pytest.approx(0.002)

    def test_section_must_be_mapping(self, tmp_path):
        write_config(tmp_path, "engine: restic\n")
        with pytest.raises(ColdArchiveError):
            load_settings(env_file=None)

    def test_invalid_yaml(self, tmp_path):
        write_config(tmp_path, "engine: [unclosed\n")
        with pytest.raises(ColdArchiveError):
            load_settings(env_file=None)


def test_settings_defaults_follow_environment(tmp_path):
    assert Settings().config_dir == tmp_path / "home"
