"""Pydantic base model with nested value access.

Key Features:
- `/`-separated path access to nested settings (`maintenance/rollup_interval_sec`), used by
  the maintenance scheduler to read cadences live from the configuration.
- Callbacks on nested value changes, used to reconfigure logging on the fly.
"""

import weakref
from typing import Any, Callable, Dict, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError

# Global weakref dictionary to hold external state per model instance
# Used as a workaround for PrivateAttr not working in e.g. Mixin Classes
_model_private_state: "weakref.WeakKeyDictionary[Union[PydanticBaseModel, PydanticModelNestedValueMixin], Dict[str, Any]]" = weakref.WeakKeyDictionary()


def set_private_attr(
    model: Union["PydanticBaseModel", "PydanticModelNestedValueMixin"], key: str, value: Any
) -> None:
    """Set a private attribute for a model instance (not stored in model itself)."""
    if model not in _model_private_state:
        _model_private_state[model] = {}
    _model_private_state[model][key] = value


def get_private_attr(
    model: Union["PydanticBaseModel", "PydanticModelNestedValueMixin"], key: str, default: Any = None
) -> Any:
    """Get a private attribute or return default."""
    return _model_private_state.get(model, {}).get(key, default)


class PydanticModelNestedValueMixin:
    """A mixin providing methods to get, set and track nested values within a Pydantic model.

    The methods use a '/'-separated path to denote the nested values.

    Example:
        def on_level_change(model, path, old, new):
            print(f"{path}: {old} -> {new}")

        config.track_nested_value("logging", on_level_change)
        config.set_nested_value("logging/console_level", "DEBUG")  # triggers callback
    """

    def track_nested_value(self, path: str, callback: Callable[[Any, str, Any, Any], None]) -> None:
        """Register a callback for a specific path (or subtree).

        Callback triggers if set path is equal or deeper.

        Args:
            path (str): '/'-separated path to track.
            callback (callable): Function called as callback(model_instance, set_path, old_value, new_value).

        Raises:
            ValueError: If the path does not resolve to a value of the model.
        """
        path = path.strip("/")
        try:
            self.get_nested_value(path)
        except (KeyError, IndexError) as e:
            raise ValueError(f"Path '{path}' is invalid") from e

        nested_value_callbacks = get_private_attr(self, "nested_value_callbacks", dict())
        nested_value_callbacks.setdefault(path, []).append(callback)
        set_private_attr(self, "nested_value_callbacks", nested_value_callbacks)

    def get_nested_value(self, path: str) -> Any:
        """Retrieve a nested value from the model using a '/'-separated path.

        Args:
            path (str): A '/'-separated path to the nested attribute (e.g., "maintenance/compaction_time").

        Returns:
            Any: The retrieved value.

        Raises:
            KeyError: If a key is not found in the model.
            IndexError: If a list index is out of bounds or invalid.
        """
        model: Any = self

        for key in path.strip("/").split("/"):
            if isinstance(model, list):
                try:
                    model = model[int(key)]
                except (ValueError, IndexError) as e:
                    raise IndexError(f"Invalid list index at '{path}': {key}; {e}")
            elif isinstance(model, dict):
                try:
                    model = model[key]
                except KeyError as e:
                    raise KeyError(f"Invalid dict key at '{path}': {key}; {e}")
            elif isinstance(model, BaseModel):
                model_fields = type(model).model_fields
                if key not in model_fields and key not in type(model).model_computed_fields:
                    raise KeyError(f"Invalid model key at '{path}': {key}")
                model = getattr(model, key)
            else:
                raise KeyError(f"Key '{key}' not found in model.")

        return model

    def set_nested_value(self, path: str, value: Any) -> None:
        """Set a nested value in the model using a '/'-separated path.

        Pydantic validation is applied on assignment. Triggers the callbacks registered by
        `track_nested_value` for the path or any of its parents.

        Args:
            path (str): A '/'-separated path to the nested attribute.
            value (Any): The new value to set.

        Raises:
            KeyError: If a key is not found in the model.
            ValueError: If a validation error occurs.
        """
        path = path.strip("/")
        try:
            old_value = self.get_nested_value(path)
        except (KeyError, IndexError):
            old_value = None

        *parents, last_key = path.split("/")
        model: Any = self.get_nested_value("/".join(parents)) if parents else self

        if isinstance(model, BaseModel):
            if last_key not in type(model).model_fields:
                raise KeyError(f"Key '{last_key}' not found in model at '{path}'.")
            try:
                model.__pydantic_validator__.validate_assignment(model, last_key, value)
            except ValidationError as e:
                raise ValueError(f"Error updating model: {e}") from e
        elif isinstance(model, dict):
            model[last_key] = value
        else:
            raise KeyError(f"Can not set '{path}' on {type(model)}.")

        # Trigger all callbacks whose path is a prefix of set path
        nested_value_callbacks = get_private_attr(self, "nested_value_callbacks", dict())
        for cb_path, callbacks in nested_value_callbacks.items():
            if path == cb_path or path.startswith(cb_path + "/"):
                for cb in callbacks:
                    cb(self, path, old_value, value)
                    logger.trace("Nested value callback for '{}' triggered by '{}'", cb_path, path)


class PydanticBaseModel(PydanticModelNestedValueMixin, BaseModel):
    """Base model with nested value utilities."""

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        use_enum_values=True,
        validate_assignment=True,
    )

    def __hash__(self) -> int:
        return id(self)
