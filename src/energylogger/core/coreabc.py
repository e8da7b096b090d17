"""Abstract and base classes for the energylogger core.

Classes:
    - ConfigMixin: Mixin class for accessing the global configuration.
    - SingletonMixin: Mixin class to create singletons.
"""

import threading
from typing import Any, ClassVar, Dict, Type

from loguru import logger

from energylogger.core.decorators import classproperty

config_energylogger: Any = None


class ConfigMixin:
    """Mixin class for classes that need the global configuration.

    The `config` class property retrieves the configuration singleton lazily to avoid
    import-time circular dependencies.

    Example:
        .. code-block:: python

            class MyEngine(ConfigMixin):
                def rate(self):
                    return self.config.cost.per_kwh

    """

    @classproperty
    def config(cls) -> Any:
        """Convenience class method/ attribute to retrieve the configuration.

        Returns:
            ConfigEnergyLogger: The configuration.
        """
        # avoid circular dependency at import time
        global config_energylogger
        if config_energylogger is None:
            from energylogger.config.config import get_config

            config_energylogger = get_config()

        return config_energylogger

    @classmethod
    def config_value(cls, path: str, default: Any = None) -> Any:
        """Configuration value at a '/'-separated path, or `default` if it is unset."""
        try:
            value = cls.config.get_nested_value(path)
        except (AttributeError, KeyError, IndexError):
            return default
        return default if value is None else value


class SingletonMixin:
    """A thread-safe singleton mixin class.

    Ensures that only one instance of the derived class is created, even when accessed from
    multiple threads (the MQTT network thread and the maintenance worker threads both reach
    for the configuration).

    Attributes:
        _instances (Dict[Type, Any]): A dictionary holding instances of each singleton class.
        _lock (threading.Lock): A lock to synchronize access to singleton instance creation.

    Usage:
        - Inherit from `SingletonMixin` alongside other classes to make them singletons.
        - Avoid using `__init__` to reinitialize the singleton instance after it has been created.
    """

    _lock: ClassVar[threading.Lock] = threading.Lock()
    _instances: ClassVar[Dict[Type, Any]] = {}

    def __new__(cls: Type["SingletonMixin"], *args: Any, **kwargs: Any) -> "SingletonMixin":
        """Creates or returns the singleton instance of the class.

        Args:
            *args: Positional arguments for instance creation (ignored if instance exists).
            **kwargs: Keyword arguments for instance creation (ignored if instance exists).

        Returns:
            SingletonMixin: The singleton instance of the derived class.
        """
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    instance = super().__new__(cls)
                    cls._instances[cls] = instance
        return cls._instances[cls]

    @classmethod
    def reset_instance(cls) -> None:
        """Resets the singleton instance, forcing it to be recreated on next access."""
        with cls._lock:
            if cls in cls._instances:
                del cls._instances[cls]
                logger.debug("{} singleton instance has been reset.", cls.__name__)

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        """Initializes the singleton instance if it has not been initialized previously.

        Args:
            *args: Positional arguments for initialization.
            **kwargs: Keyword arguments for initialization.
        """
        if not hasattr(self, "_initialized"):
            super().__init__(*args, **kwargs)
            self._initialized = True
