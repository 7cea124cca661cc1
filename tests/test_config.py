import pytest

from armiarma import config


@pytest.mark.parametrize("level", ["trace", "debug", "info", "warn", "error", "INFO", "Debug"])
def test_valid_log_levels(level):
    assert config.check_valid_log_level(level) is True


@pytest.mark.parametrize("level", ["verbose", "", "fatal"])
def test_invalid_log_levels(level):
    assert config.check_valid_log_level(level) is False


def test_default_log_level_is_valid():
    assert config.check_valid_log_level(config.DEFAULT_LOG_LEVEL) is True


def test_port_zero_is_invalid():
    assert config.check_valid_port(config.MIN_PORT) is False


def test_port_bounds():
    assert config.check_valid_port(config.MAX_PORT) is True
    assert config.check_valid_port(config.MAX_PORT + 1) is False
    assert config.check_valid_port(-1) is False


def test_default_ports_are_valid():
    assert config.check_valid_port(config.DEFAULT_PORT) is True
    assert config.check_valid_port(config.DEFAULT_METRICS_PORT) is True


def test_peerstore_is_created(tmp_path):
    target = tmp_path / "peerstore"
    config.validate_or_create_peerstore(target)
    assert target.is_dir()


def test_existing_peerstore_is_kept(tmp_path):
    target = tmp_path / "peerstore"
    target.mkdir()
    marker = target / "marker"
    marker.write_text("x")
    config.validate_or_create_peerstore(target)
    assert marker.read_text() == "x"


def test_peerstore_with_missing_parent_raises(tmp_path):
    target = tmp_path / "missing" / "peerstore"
    with pytest.raises(OSError, match="unable to create folder"):
        config.validate_or_create_peerstore(target)