from collections.abc import Callable
from typing import Any, Optional


class classproperty:
    """A read-only property on class level.

    `property` can no longer be combined with `@classmethod` since Python 3.13. This
    descriptor gives the same property-like access for values that depend on the class
    only, e.g. the lazily created configuration singleton.

    Example:
        class Store:
            _path = "/var/lib/energylogger/energy.db"

            @classproperty
            def path(cls):
                return cls._path

        print(Store.path)  # Outputs: /var/lib/energylogger/energy.db

    Parameters:
        fget (Callable[[Any], Any]): A method that takes the class as an
                                      argument and returns a value.

    Raises:
        RuntimeError: If `fget` is not defined when `__get__` is called.
    """

    def __init__(self, fget: Callable[[Any], Any]) -> None:
        self.fget = fget

    def __get__(self, _: Any, owner_cls: Optional[type[Any]] = None) -> Any:
        if owner_cls is None:
            return self
        if self.fget is None:
            raise RuntimeError("'fget' not defined when `__get__` is called")
        return self.fget(owner_cls)
