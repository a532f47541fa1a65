import pytest

from cereals.config import DB_FILENAME, Config, load_config


def test_db_path_is_fixed_name(tmp_path):
    assert Config(data_dir=tmp_path).db_path == tmp_path / DB_FILENAME
    assert DB_FILENAME == "cereals.db"


def test_load_from_environment(tmp_path, monkeypatch):
    data_dir = tmp_path / "nested" / "data"
    monkeypatch.setenv("DATA_DIR", str(data_dir))
    monkeypatch.setenv("CEREALS_LOCK_TIMEOUT", "2.5")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = load_config()

    assert config.data_dir == data_dir
    assert data_dir.is_dir()
    assert config.lock_timeout == 2.5
    assert config.log_level == "DEBUG"


@pytest.mark.parametrize("value", ["soon", "0", "-1"])
def test_invalid_lock_timeout(tmp_path, monkeypatch, value):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("CEREALS_LOCK_TIMEOUT", value)

    with pytest.raises(ValueError, match="CEREALS_LOCK_TIMEOUT"):
        load_config()


@pytest.mark.parametrize("value", ["verbose", "", "loud"])
def test_invalid_log_level(tmp_path, monkeypatch, value):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("LOG_LEVEL", value)

    with pytest.raises(ValueError, match="LOG_LEVEL"):
        load_config()
