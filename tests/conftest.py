import logging
import tempfile
from pathlib import Path
from unittest.mock import PropertyMock, patch

import pendulum
import pytest

from energylogger.config.config import ConfigEnergyLogger, get_config
from energylogger.core.database import Database


@pytest.fixture()
def disable_debug_logging(scope="session", autouse=True):
    """Automatically disable debug logging for all tests."""
    original_levels = {}
    root_logger = logging.getLogger()

    original_levels[root_logger] = root_logger.level
    root_logger.setLevel(logging.INFO)

    for logger_name, logger in logging.root.manager.loggerDict.items():
        if isinstance(logger, logging.Logger):
            original_levels[logger] = logger.level
            if logger.level <= logging.DEBUG:
                logger.setLevel(logging.INFO)

    yield

    for logger, level in original_levels.items():
        logger.setLevel(level)


def pytest_addoption(parser):
    parser.addoption(
        "--check-config-side-effect",
        action="store_true",
        default=False,
        help="Verify that user config file is non-existent (will also fail if user config file exists before test run).",
    )


@pytest.fixture(autouse=True)
def config_mixin(config_energylogger):
    with patch(
        "energylogger.core.coreabc.ConfigMixin.config", new_callable=PropertyMock
    ) as config_mixin_patch:
        config_mixin_patch.return_value = config_energylogger
        yield config_mixin_patch


# Test if test has side effect of writing to system (user) config file
# Before activating, make sure that no user config file exists (e.g. ~/.config/energylogger/energylogger.config.json)
@pytest.fixture(autouse=True)
def cfg_non_existent(request):
    yield
    if bool(request.config.getoption("--check-config-side-effect")):
        from platformdirs import user_config_dir

        user_dir = user_config_dir(ConfigEnergyLogger.APP_NAME)
        assert not Path(user_dir).joinpath(ConfigEnergyLogger.CONFIG_FILE_NAME).exists()
        assert not Path.cwd().joinpath(ConfigEnergyLogger.CONFIG_FILE_NAME).exists()


@pytest.fixture(autouse=True)
def user_cwd(config_default_dirs):
    with patch(
        "pathlib.Path.cwd",
        return_value=config_default_dirs[1],
    ) as user_cwd_patch:
        yield user_cwd_patch


@pytest.fixture(autouse=True)
def user_config_dir(config_default_dirs):
    with patch(
        "energylogger.config.config.user_config_dir",
        return_value=str(config_default_dirs[0]),
    ) as user_dir_patch:
        yield user_dir_patch


@pytest.fixture(autouse=True)
def user_data_dir(config_default_dirs):
    with patch(
        "energylogger.config.config.user_data_dir",
        return_value=str(config_default_dirs[-1] / "data"),
    ) as user_dir_patch:
        yield user_dir_patch


@pytest.fixture
def config_energylogger(
    disable_debug_logging,
    user_config_dir,
    user_data_dir,
    user_cwd,
    config_default_dirs,
    monkeypatch,
) -> ConfigEnergyLogger:
    """Fixture to reset the configuration to default values."""
    for env_name in ("ENERGYLOGGER_DIR", "ENERGYLOGGER_CONFIG_DIR", "ENERGYLOGGER_LOGGING__LEVEL"):
        monkeypatch.delenv(env_name, raising=False)
    # Deterministic wall-clock schedules and sensor timestamps
    monkeypatch.setenv("ENERGYLOGGER_GENERAL__TIMEZONE", "UTC")
    config_file = config_default_dirs[0] / ConfigEnergyLogger.CONFIG_FILE_NAME
    config_file_cwd = config_default_dirs[1] / ConfigEnergyLogger.CONFIG_FILE_NAME
    assert not config_file.exists()
    assert not config_file_cwd.exists()
    config_energylogger = get_config()
    config_energylogger.reset_settings()
    assert config_file == config_energylogger.general.config_file_path
    assert config_file.exists()
    assert not config_file_cwd.exists()
    assert config_default_dirs[-1] / "data" == config_energylogger.general.data_folder_path
    return config_energylogger


@pytest.fixture
def config_default_dirs():
    """Fixture that provides a list of directories to be used as config dir."""
    with tempfile.TemporaryDirectory() as tmp_user_home_dir:
        # Default config directory from platform user config directory
        config_default_dir_user = Path(tmp_user_home_dir) / "config"

        # Default config directory from current working directory
        config_default_dir_cwd = Path(tmp_user_home_dir) / "cwd"
        config_default_dir_cwd.mkdir()

        # Default data directory from platform user data directory
        data_default_dir_user = Path(tmp_user_home_dir)
        yield (
            config_default_dir_user,
            config_default_dir_cwd,
            data_default_dir_user,
        )


@pytest.fixture
def database(tmp_path) -> Database:
    """Open database with schema in a temporary directory."""
    db = Database(tmp_path / "energy.db")
    db.open()
    db.init_schema()
    yield db
    db.close()


@pytest.fixture
def insert_energy(database):
    """Insert energy_data rows given as (iso timestamp or epoch, e_in[, power])."""

    def _insert(*rows) -> None:
        for row in rows:
            stamp, e_in, *rest = row
            if isinstance(stamp, (int, float)):
                ts = int(stamp)
                text = pendulum.from_timestamp(ts, tz="UTC").to_rfc3339_string()
            else:
                dt = pendulum.parse(stamp)
                ts = dt.int_timestamp
                text = dt.to_rfc3339_string()
            power = rest[0] if rest else None
            database.execute(
                "INSERT INTO energy_data (timestamp_unix, timestamp_rfc3339, e_in, e_out, power) "
                "VALUES (?, ?, ?, ?, ?)",
                (ts, text, e_in, 0.0, power),
            )

    return _insert

