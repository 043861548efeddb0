"""
Domain-level update rule contract.

The solver computes one learning rate per iteration and hands it to an update
rule, which turns the gradients reported by every replica into the history
(velocity) buffer of each shared parameter. Replicas then apply
``data -= hist`` themselves, so the rule never writes parameter values.

Notes
-----
- Domain contracts are backend-agnostic and must not depend on NumPy or
  infrastructure implementations.
"""

from __future__ import annotations

from typing import Iterable, Protocol, runtime_checkable


@runtime_checkable
class IUpdateRule(Protocol):
    """
    Update rule interface contract.

    Required methods
    ----------------
    - `step(lr)` computes the history of every managed parameter for one
      iteration at learning rate `lr`.
    - `clear_history()` zeroes every history buffer.
    """

    def step(self, lr: float) -> None:
        ...

    def clear_history(self) -> None:
        ...

    @property
    def params(self) -> Iterable[object]:
        """
        Return the parameters managed by this rule.

        Infrastructure implementations return their `Parameter` objects.
        """
        ...
