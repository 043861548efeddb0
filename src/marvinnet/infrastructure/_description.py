"""
Declarative architecture description.

A network is described by one JSON document with three sections:

    {
      "train":  { solver attributes: base_lr, GPU, path, ... },
      "test":   { GPU, debug_mode },
      "layers": [ {"type": "...", "name": "...", "in": [...], "out": [...], ...}, ... ]
    }

`NetDescription` holds the three sections as plain dictionaries.
`AttributeReader` wraps one attribute dictionary and implements the lookup
rules shared by every consumer: a missing required attribute is fatal, a
missing optional attribute falls back to its documented default, and an
enumeration value outside the supported spellings is fatal.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Type, TypeVar

from ..domain._errors import ConfigError
from .buffer._io import open_with_retry

E = TypeVar("E", bound=Enum)

_MISSING = object()


class AttributeReader:
    """
    Typed access to one attribute dictionary.

    Parameters
    ----------
    attrs : Mapping[str, Any]
        Attribute dictionary, e.g. one entry of the "layers" list.
    owner : str, optional
        Name used in error messages.
    """

    def __init__(self, attrs: Mapping[str, Any], *, owner: str = "") -> None:
        self._attrs = dict(attrs)
        self.owner = owner or str(self._attrs.get("name", ""))

    def has(self, name: str) -> bool:
        return name in self._attrs

    def require(self, name: str) -> Any:
        """Return attribute `name` or fail with `ConfigError`."""
        if name not in self._attrs:
            raise ConfigError(f"missing required attribute {name!r}", where=self.owner or None)
        return self._attrs[name]

    def get(self, name: str, default: Any = _MISSING) -> Any:
        if name in self._attrs:
            return self._attrs[name]
        if default is _MISSING:
            return self.require(name)
        return default

    def _convert(self, name: str, value: Any, convert: Callable[[Any], Any]) -> Any:
        try:
            return convert(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(
                f"attribute {name!r} has invalid value {value!r}", where=self.owner or None
            ) from e

    def get_int(self, name: str, default: Any = _MISSING) -> int:
        return self._convert(name, self.get(name, default), int)

    def get_float(self, name: str, default: Any = _MISSING) -> float:
        return self._convert(name, self.get(name, default), float)

    def get_bool(self, name: str, default: Any = _MISSING) -> bool:
        value = self.get(name, default)
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        if isinstance(value, (int, float)):
            return bool(value)
        raise ConfigError(f"attribute {name!r} has invalid value {value!r}", where=self.owner or None)

    def get_str(self, name: str, default: Any = _MISSING) -> str:
        return self._convert(name, self.get(name, default), str)

    def get_list(
        self,
        name: str,
        default: Any = _MISSING,
        *,
        item: Callable[[Any], Any] = int,
    ) -> List[Any]:
        """Return a list attribute; a scalar value is read as a one-element list."""
        value = self.get(name, default)
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            value = [value]
        return [self._convert(name, v, item) for v in value]

    def get_enum(self, name: str, enum_cls: Type[E], default: Any = _MISSING) -> E:
        """
        Return an enumeration attribute. Enum values are the spellings used in
        the description.
        """
        value = self.get(name, default)
        if isinstance(value, enum_cls):
            return value
        try:
            return enum_cls(value)
        except ValueError as e:
            supported = ", ".join(str(m.value) for m in enum_cls)
            raise ConfigError(
                f"unsupported {name} = {value!r}. Supported: {supported}",
                where=self.owner or None,
            ) from e


@dataclass
class NetDescription:
    """
    In-memory architecture description.

    Attributes
    ----------
    layers : list[dict]
        Operator records in file order.
    train : dict
        Solver attributes.
    test : dict
        Attributes for standalone testing.
    """

    layers: List[Dict[str, Any]] = field(default_factory=list)
    train: Dict[str, Any] = field(default_factory=dict)
    test: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "NetDescription":
        layers = obj.get("layers")
        if not isinstance(layers, list):
            raise ConfigError("description has no 'layers' list")
        for i, record in enumerate(layers):
            if not isinstance(record, dict):
                raise ConfigError(f"layer record #{i} is not an object")
        return cls(
            layers=[dict(r) for r in layers],
            train=dict(obj.get("train") or {}),
            test=dict(obj.get("test") or {}),
        )

    @classmethod
    def from_file(cls, path: str) -> "NetDescription":
        with open_with_retry(path, "rb") as fp:
            raw = fp.read()
        try:
            obj = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ConfigError(f"malformed description: {e}", where=str(path)) from e
        if not isinstance(obj, dict):
            raise ConfigError("description must be a JSON object", where=str(path))
        return cls.from_dict(obj)

    def train_reader(self) -> AttributeReader:
        return AttributeReader(self.train, owner="train")

    def test_reader(self) -> AttributeReader:
        return AttributeReader(self.test, owner="test")

    def layer_readers(self) -> List[AttributeReader]:
        return [AttributeReader(r) for r in self.layers]
