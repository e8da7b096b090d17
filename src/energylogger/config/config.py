"""This module provides functionality to manage and handle configuration for the energylogger.

The module includes loading, merging, and validating JSON configuration files.
It also provides utility functions for working directory setup.

Key features:
- Loading and merging configurations from environment, dotenv and JSON files
- Validating configurations using Pydantic models
- Managing directory setups for the application
"""

import os
from pathlib import Path
from typing import Any, ClassVar, Optional, Type

from loguru import logger
from platformdirs import user_config_dir, user_data_dir
from pydantic import Field, computed_field, field_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

# settings
from energylogger.config.configabc import SettingsBaseModel
from energylogger.core.coreabc import SingletonMixin
from energylogger.core.database import DatabaseCommonSettings
from energylogger.core.decorators import classproperty
from energylogger.core.logsettings import LoggingCommonSettings
from energylogger.core.pydantic import PydanticModelNestedValueMixin
from energylogger.ingest.mqtt import MqttCommonSettings
from energylogger.maintenance.maintenancesettings import (
    CostCommonSettings,
    MaintenanceCommonSettings,
)
from energylogger.utils.datetimeutil import to_timezone


def get_absolute_path(
    basepath: Optional[Path | str], subpath: Optional[Path | str]
) -> Optional[Path]:
    """Get path based on base path."""
    if isinstance(basepath, str):
        basepath = Path(basepath)
    if subpath is None:
        return basepath

    if isinstance(subpath, str):
        subpath = Path(subpath)
    if subpath.is_absolute():
        return subpath
    if basepath is not None:
        return basepath.joinpath(subpath)
    return None


class GeneralSettings(SettingsBaseModel):
    """Settings for common configuration.

    Attributes:
        data_folder_path (Optional[Path]): Directory of the database and log files.
        timezone (Optional[str]): Timezone of wall-clock schedules and of naive timestamps
            received from sensors. None means the local timezone of the host.
    """

    _config_folder_path: ClassVar[Optional[Path]] = None
    _config_file_path: ClassVar[Optional[Path]] = None

    data_folder_path: Optional[Path] = Field(
        default=None,
        json_schema_extra={
            "description": "Path to energylogger data directory.",
            "examples": [None, "/var/lib/energylogger"],
        },
    )

    timezone: Optional[str] = Field(
        default=None,
        json_schema_extra={
            "description": "Timezone of schedules and sensor timestamps. None is the host timezone.",
            "examples": [None, "Europe/Berlin"],
        },
    )

    @field_validator("timezone", mode="after")
    @classmethod
    def validate_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            to_timezone(value)
        return value

    @computed_field  # type: ignore[prop-decorator]
    @property
    def config_folder_path(self) -> Optional[Path]:
        """Path to energylogger configuration directory."""
        return self._config_folder_path

    @computed_field  # type: ignore[prop-decorator]
    @property
    def config_file_path(self) -> Optional[Path]:
        """Path to energylogger configuration file."""
        return self._config_file_path


class SettingsEnergyLogger(BaseSettings, PydanticModelNestedValueMixin):
    """Settings for all of the energylogger.

    Used by updating the configuration with specific settings only.
    """

    general: Optional[GeneralSettings] = Field(
        default=None,
        description="General Settings",
    )
    database: Optional[DatabaseCommonSettings] = Field(
        default=None,
        description="Database Settings",
    )
    cost: Optional[CostCommonSettings] = Field(
        default=None,
        description="Cost Settings",
    )
    maintenance: Optional[MaintenanceCommonSettings] = Field(
        default=None,
        description="Maintenance Settings",
    )
    mqtt: Optional[MqttCommonSettings] = Field(
        default=None,
        description="MQTT Settings",
    )
    logging: Optional[LoggingCommonSettings] = Field(
        default=None,
        description="Logging Settings",
    )

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
        env_prefix="ENERGYLOGGER_",
        ignored_types=(classproperty,),
    )

    def __hash__(self) -> int:
        return id(self)


class SettingsEnergyLoggerDefaults(SettingsEnergyLogger):
    """Settings for all of the energylogger with defaults.

    Used by ConfigEnergyLogger instance to make all fields available.
    """

    general: GeneralSettings = GeneralSettings()
    database: DatabaseCommonSettings = DatabaseCommonSettings()
    cost: CostCommonSettings = CostCommonSettings()
    maintenance: MaintenanceCommonSettings = MaintenanceCommonSettings()
    mqtt: MqttCommonSettings = MqttCommonSettings()
    logging: LoggingCommonSettings = LoggingCommonSettings()


class ConfigEnergyLogger(SingletonMixin, SettingsEnergyLoggerDefaults):
    """Singleton configuration handler for the energylogger.

    Initialization Process:
      - Upon instantiation, the singleton instance attempts to load a configuration file in this order:
        1. The directory specified by the `ENERGYLOGGER_CONFIG_DIR` environment variable
           (relative to `ENERGYLOGGER_DIR` if given).
        2. A platform specific default directory.
        3. The current working directory.
      - The first available configuration file found in these directories is loaded.
      - If no configuration file is found, a default configuration file is written to the
        first of these directories.

    Settings priority (first wins): init arguments, environment variables, dotenv file,
    configuration file, field defaults.

    Example:
        ```python
        config = ConfigEnergyLogger()  # Always returns the same instance
        print(config.maintenance.compaction_time)
        ```
    """

    APP_NAME: ClassVar[str] = "energylogger"
    APP_AUTHOR: ClassVar[str] = "energylogger"
    ENERGYLOGGER_DIR: ClassVar[str] = "ENERGYLOGGER_DIR"
    ENERGYLOGGER_CONFIG_DIR: ClassVar[str] = "ENERGYLOGGER_CONFIG_DIR"
    ENCODING: ClassVar[str] = "UTF-8"
    CONFIG_FILE_NAME: ClassVar[str] = "energylogger.config.json"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customizes the order and handling of settings sources.

        Args:
            settings_cls (Type[BaseSettings]): The Pydantic BaseSettings class for which sources are customized.
            init_settings (PydanticBaseSettingsSource): The initial settings source, typically passed at runtime.
            env_settings (PydanticBaseSettingsSource): Settings sourced from environment variables.
            dotenv_settings (PydanticBaseSettingsSource): Settings sourced from a dotenv file.
            file_secret_settings (PydanticBaseSettingsSource): Unused (needed for parent class interface).

        Returns:
            tuple[PydanticBaseSettingsSource, ...]: Settings sources in the order they should be applied.
        """
        setting_sources = [
            init_settings,
            env_settings,
            dotenv_settings,
        ]

        config_file, exists = cls._get_config_file_path()
        if exists:
            try:
                setting_sources.append(JsonConfigSettingsSource(settings_cls, json_file=config_file))
            except Exception as e:  # noqa: BLE001
                logger.error(
                    "Error reading config file '{}' (falling back to defaults): {}", config_file, e
                )

        GeneralSettings._config_folder_path = config_file.parent
        GeneralSettings._config_file_path = config_file

        return tuple(setting_sources)

    @classproperty
    def package_root_path(cls) -> Path:
        """Compute the package root path."""
        return Path(__file__).parent.parent.resolve()

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        """Initializes the singleton ConfigEnergyLogger instance.

        Configuration data is loaded from a configuration file or a default one is created if
        none exists.
        """
        if hasattr(self, "_initialized"):
            return
        self._setup(*args, **kwargs)
        self._initialized = True

    def _setup(self, *args: Any, **kwargs: Any) -> None:
        """Re-initialize global settings."""
        # Assure settings base knows the configuration
        SettingsBaseModel.config = self
        # (Re-)load settings
        SettingsEnergyLoggerDefaults.__init__(self, *args, **kwargs)
        # Init config file and data folder paths
        self._create_initial_config_file()
        self._update_data_folder_path()

    def reset_settings(self) -> None:
        """Reset all changed settings to environment/config file defaults."""
        self._setup()

    def _create_initial_config_file(self) -> None:
        if self.general.config_file_path and not self.general.config_file_path.exists():
            self.general.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                with self.general.config_file_path.open("w", encoding="utf-8", newline="\n") as f:
                    f.write(self.model_dump_json(indent=4))
            except OSError as e:
                logger.error(
                    "Could not write configuration file '{}': {}", self.general.config_file_path, e
                )

    def _update_data_folder_path(self) -> None:
        """Updates path to the data directory."""
        # From Settings
        if data_dir := self.general.data_folder_path:
            try:
                data_dir.mkdir(parents=True, exist_ok=True)
                self.general.data_folder_path = data_dir
                return
            except OSError as e:
                logger.warning("Could not setup data dir: {}", e)
        # From ENERGYLOGGER_DIR env
        if env_dir := os.getenv(self.ENERGYLOGGER_DIR):
            try:
                data_dir = Path(env_dir).resolve()
                data_dir.mkdir(parents=True, exist_ok=True)
                self.general.data_folder_path = data_dir
                return
            except OSError as e:
                logger.warning("Could not setup data dir: {}", e)
        # From platform specific default path
        try:
            data_dir = Path(user_data_dir(self.APP_NAME, self.APP_AUTHOR))
            data_dir.mkdir(parents=True, exist_ok=True)
            self.general.data_folder_path = data_dir
            return
        except OSError as e:
            logger.warning("Could not setup data dir: {}", e)
        # Current working directory
        self.general.data_folder_path = Path.cwd()

    @classmethod
    def _get_config_file_path(cls) -> tuple[Path, bool]:
        """Find a valid configuration file or return the desired path for a new config file.

        Returns:
            tuple[Path, bool]: The path to the configuration file and whether it exists.
        """
        config_dirs = []
        env_base_dir = os.getenv(cls.ENERGYLOGGER_DIR)
        env_config_dir = os.getenv(cls.ENERGYLOGGER_CONFIG_DIR)
        env_dir = get_absolute_path(env_base_dir, env_config_dir)
        logger.debug("Environment config dir: '{}'", env_dir)
        if env_dir is not None:
            config_dirs.append(env_dir.resolve())
        config_dirs.append(Path(user_config_dir(cls.APP_NAME, cls.APP_AUTHOR)))
        config_dirs.append(Path.cwd())
        for cdir in config_dirs:
            cfile = cdir.joinpath(cls.CONFIG_FILE_NAME)
            if cfile.exists():
                logger.debug("Found config file: '{}'", cfile)
                return cfile, True

        return config_dirs[0].joinpath(cls.CONFIG_FILE_NAME), False


def get_config() -> ConfigEnergyLogger:
    """Gets the energylogger configuration data."""
    return ConfigEnergyLogger()
