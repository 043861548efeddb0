"""
Graph operators.

Importing this package registers every built-in layer type with the layer
registry, so the graph builder can resolve any type tag of the
architecture description.

Exports
-------
- Layer, ParameterizedLayer, LoadReport:
    Base classes and the result of loading parameter records.
- register_layer, layer_from_attributes, registered_layer_types:
    Registry access.
- One class per built-in type tag.
"""

from ._base import Layer, LoadReport, ParameterizedLayer
from ._registry import layer_from_attributes, register_layer, registered_layer_types
from ._data import DataLayer, MemoryData, TensorLayer
from ._disk_data import DiskData
from ._convolution import Convolution
from ._inner_product import InnerProduct
from ._pooling import Pooling, PoolingMode
from ._dropout import Dropout
from ._activation import Activation, ActivationMode, Softmax
from ._lrn import LRN, LRNMode
from ._reshape import Reshape
from ._roi import ROI, ROIPooling
from ._combine import Concat, ElementWise, ElementWiseMode
from ._loss import Loss, LossMode

__all__ = [
    Layer.__name__,
    ParameterizedLayer.__name__,
    LoadReport.__name__,
    register_layer.__name__,
    layer_from_attributes.__name__,
    registered_layer_types.__name__,
    DataLayer.__name__,
    TensorLayer.__name__,
    MemoryData.__name__,
    DiskData.__name__,
    Convolution.__name__,
    InnerProduct.__name__,
    Pooling.__name__,
    PoolingMode.__name__,
    Dropout.__name__,
    Activation.__name__,
    ActivationMode.__name__,
    Softmax.__name__,
    LRN.__name__,
    LRNMode.__name__,
    Reshape.__name__,
    ROI.__name__,
    ROIPooling.__name__,
    ElementWise.__name__,
    ElementWiseMode.__name__,
    Concat.__name__,
    Loss.__name__,
    LossMode.__name__,
]
