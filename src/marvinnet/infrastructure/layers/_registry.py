"""
Layer type registry.

Concrete layer classes register themselves under the type tag used in the
architecture description:

    @register_layer("InnerProduct")
    class InnerProduct(ParameterizedLayer):
        ...

The graph builder looks tags up with `layer_from_attributes`; an unknown tag
is fatal.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple, Type

from ...domain._errors import UnknownLayerTypeError

if TYPE_CHECKING:
    from ..device._context import DeviceContext
    from .._description import AttributeReader
    from ._base import Layer

_LAYER_REGISTRY: Dict[str, Type[Any]] = {}


def register_layer(name: Optional[str] = None) -> Callable[[Type[Any]], Type[Any]]:
    """
    Decorator to register a Layer class under a description type tag.

    The tag defaults to the class name. The tag is also stored on the class
    as `TYPE`.
    """

    def deco(cls: Type[Any]) -> Type[Any]:
        key = name or cls.__name__
        _LAYER_REGISTRY[key] = cls
        cls.TYPE = key
        return cls

    return deco


def registered_layer_types() -> Tuple[str, ...]:
    return tuple(sorted(_LAYER_REGISTRY))


def layer_class(type_name: str) -> Type[Any]:
    """
    Return the class registered for `type_name`.

    Raises
    ------
    UnknownLayerTypeError
        If no class is registered under that tag.
    """
    if type_name not in _LAYER_REGISTRY:
        raise UnknownLayerTypeError(type_name, registered_layer_types())
    return _LAYER_REGISTRY[type_name]


def layer_from_attributes(reader: "AttributeReader", context: "DeviceContext") -> "Layer":
    """Build the layer described by one record of the description."""
    cls = layer_class(reader.get_str("type"))
    return cls.from_attributes(reader, context)
