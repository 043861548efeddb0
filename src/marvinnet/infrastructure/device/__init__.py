from ._backend import NumpyBackend
from ._context import DeviceContext, STORAGE_DTYPE

__all__ = [NumpyBackend.__name__, DeviceContext.__name__, "STORAGE_DTYPE"]
