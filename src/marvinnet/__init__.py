"""
marvinnet: a multi-replica neural network training engine on numpy.

Exports
-------
- Net, Solver: graph replica and multi-replica trainer.
- NetDescription: architecture description loader.
- Buffer: host buffer and record stream format.
- DeviceContext, NumpyBackend: device handles.
- Phase: execution phase.
- FatalError: root of every unrecoverable engine error.
"""

from .domain._errors import FatalError
from .domain._phase import Phase
from .infrastructure._description import NetDescription
from .infrastructure.buffer import Buffer
from .infrastructure.device import DeviceContext, NumpyBackend
from .infrastructure.net import Net
from .infrastructure.solver import Solver

__version__ = "0.1.0"

__all__ = [
    Net.__name__,
    Solver.__name__,
    NetDescription.__name__,
    Buffer.__name__,
    DeviceContext.__name__,
    NumpyBackend.__name__,
    Phase.__name__,
    FatalError.__name__,
]
