"""Abstract and base classes for configuration."""

from typing import Any, ClassVar

from energylogger.core.pydantic import PydanticBaseModel


class SettingsBaseModel(PydanticBaseModel):
    """Base model class for all settings configurations.

    `config` is set to the configuration singleton once it is set up, so computed
    settings fields (e.g. the database file path) can refer to other sections.
    """

    config: ClassVar[Any] = None
