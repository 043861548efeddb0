"""
Node (layer) interface definitions.

This module defines the domain-level contracts for the operators of a
computation graph using structural subtyping via `typing.Protocol`.

Lifecycle of every layer:

    Constructed -> Allocated -> {Forward <-> Backward}* -> Destroyed

`allocate` validates arity and shapes, sizes the output edges and the layer's
own parameters. `forward` reads input activations and writes output
activations. `backward` reads output gradients and accumulates, never
assigns, into input and parameter gradients. Accumulation is what lets several
consumers of one edge each contribute their share of its gradient.
"""

from __future__ import annotations

from typing import List, Protocol, runtime_checkable

from ._phase import Phase
from ._response import IResponse


@runtime_checkable
class ILayer(Protocol):
    """
    Domain-level layer interface.

    Notes
    -----
    - The number and shape compatibility of `inputs` / `outputs` is
      operator-specific and checked in `allocate`, not at construction.
    - A layer is trainable only if `train_me` is set and only while the
      graph allocates for training.
    """

    name: str
    phase: Phase
    train_me: bool
    inputs: List[IResponse]
    outputs: List[IResponse]

    def allocate(self, phase: Phase) -> int:
        """Reserve memory for outputs and parameters; return bytes reserved."""
        ...

    def forward(self, phase: Phase) -> None:
        """Compute output activations from input activations."""
        ...

    def backward(self, phase: Phase) -> None:
        """Accumulate gradients into inputs and parameters."""
        ...

    def update(self) -> None:
        """Apply the precomputed history step to the parameters."""
        ...


@runtime_checkable
class IDataSource(Protocol):
    """
    Contract of layers that feed a graph from a dataset.

    `epoch` counts how many times the dataset has wrapped around.
    """

    epoch: int

    def item_count(self) -> int:
        """Return the number of items in the dataset."""
        ...

    def shuffle(self) -> None:
        """Randomize the order in which items are served."""
        ...
