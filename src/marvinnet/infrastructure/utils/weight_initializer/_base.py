"""
Parameter filler registry and dispatch utilities.

This module defines the concrete `WeightInitializer` used by parameterized
layers to fill their weight and bias arrays with the strategy named in the
architecture description ("Xavier", "Gaussian", "Constant").

Design
------
- Fillers are registered by string name via a decorator-based registry.
- Each filler is a callable ``(array, param, rng) -> array`` that mutates the
  array *in-place* and returns it.
- The dispatcher resolves a filler by name at construction time and invokes
  it via `__call__`.

Usage example
-------------
Registering a filler:

    @WeightInitializer.register_initializer("Xavier")
    def xavier(array, param, rng):
        ...

Applying a filler:

    init = WeightInitializer("Xavier")
    init(weight_array, 0.0, context.rng)

Notes
-----
- Registration keys must be unique unless explicitly overwritten.
- `param` is the `*_filler_param` attribute of the layer; fillers that have
  no parameter ignore it.
"""

from __future__ import annotations

from typing import Callable, ClassVar, Dict, TypeVar

import numpy as np

from ....domain._errors import ConfigError
from ....domain.utils._weight_initialization import _WeightInitializer

Filler = Callable[[np.ndarray, float, np.random.Generator], np.ndarray]
T = TypeVar("T", bound=Filler)


class WeightInitializer(_WeightInitializer):
    """
    Registry-backed filler dispatcher.

    Usage
    -----
    Register:
        @WeightInitializer.register_initializer("Constant")
        def constant(array, param, rng): ...

    Dispatch:
        init = WeightInitializer("Constant")
        init(array, 0.0, rng)

    Raises
    ------
    ConfigError
        If the requested filler name is not registered.
    """

    INITIALIZERS: ClassVar[Dict[str, Filler]] = {}

    def __init__(self, initializer_name: str) -> None:
        try:
            self._initializer: Filler = self.INITIALIZERS[initializer_name]
        except KeyError as e:
            available = ", ".join(sorted(self.INITIALIZERS)) or "<none>"
            raise ConfigError(
                f"Unsupported filler name: {initializer_name!r}. "
                f"Available: {available}"
            ) from e
        self.name = initializer_name

    @classmethod
    def register_initializer(
        cls, name: str, *, overwrite: bool = False
    ) -> Callable[[T], T]:
        """
        Decorator to register a filler under `name`.

        Parameters
        ----------
        name:
            Registry key used to retrieve the filler later.
        overwrite:
            If False (default), raises if `name` is already registered.
        """
        if not isinstance(name, str) or not name:
            raise ValueError("Initializer name must be a non-empty string")

        def decorator(func: T) -> T:
            if not overwrite and name in cls.INITIALIZERS:
                raise ValueError(f"Initializer already registered: {name!r}")
            cls.INITIALIZERS[name] = func
            return func

        return decorator

    @classmethod
    def available(cls) -> tuple[str, ...]:
        """Return registered filler names (sorted)."""
        return tuple(sorted(cls.INITIALIZERS))

    def __call__(
        self, array: np.ndarray, param: float, rng: np.random.Generator
    ) -> np.ndarray:
        return self._initializer(array, float(param), rng)
