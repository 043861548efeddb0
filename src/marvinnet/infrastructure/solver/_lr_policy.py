"""
Learning-rate schedules.

Every policy is a function of the global iteration counter:

- ``LR_fixed``:     ``base``
- ``LR_step``:      ``base * gamma ** (iter // stepsize)``
- ``LR_exp``:       ``base * gamma ** iter``
- ``LR_inv``:       ``base * (1 + gamma * iter) ** -power``
- ``LR_multistep``: ``base * gamma ** k``, ``k`` advancing each time
  ``iter`` reaches the next entry of `stepvalue`
- ``LR_poly``:      ``base * (1 - iter / max_iter) ** power``
- ``LR_sigmoid``:   ``base / (1 + exp(-gamma * (iter - stepsize)))``
- ``LR_cyclical``:  recognized but has no formula; rejected at construction

The multistep policy is stateful: `current_step` only moves forward, so the
schedule must be queried with non-decreasing iterations between `reset`s.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List

from ...domain._errors import NotImplementedModeError

logger = logging.getLogger(__name__)


class LRPolicy(Enum):
    FIXED = "LR_fixed"
    STEP = "LR_step"
    EXP = "LR_exp"
    INV = "LR_inv"
    MULTISTEP = "LR_multistep"
    POLY = "LR_poly"
    SIGMOID = "LR_sigmoid"
    CYCLICAL = "LR_cyclical"


@dataclass
class LearningRateSchedule:
    """
    Learning rate as a function of the iteration.

    Parameters
    ----------
    policy : LRPolicy
        Schedule formula.
    base_lr : float
        Rate at iteration 0 for every policy but sigmoid.
    gamma : float
        Decay factor (step, exp, inv, multistep) or slope (sigmoid).
    power : float
        Exponent of the inv and poly policies.
    stepsize : int
        Step length (step) or midpoint (sigmoid).
    stepvalue : list[int]
        Iterations at which the multistep policy decays.
    max_iter : int
        Horizon of the poly policy.

    Raises
    ------
    ValueError
        If `stepsize` is not positive for the step policy or `max_iter` is
        not positive for the poly policy.
    NotImplementedModeError
        For the cyclical policy.
    """

    policy: LRPolicy = LRPolicy.INV
    base_lr: float = 0.01
    gamma: float = 0.0001
    power: float = 0.75
    stepsize: int = 100000
    stepvalue: List[int] = field(default_factory=list)
    max_iter: int = 10000
    current_step: int = 0

    def __post_init__(self) -> None:
        self.policy = LRPolicy(self.policy)
        if self.policy is LRPolicy.CYCLICAL:
            raise NotImplementedModeError(f"{self.policy.value} has no rate formula", where="lr_policy")
        if self.policy is LRPolicy.STEP and self.stepsize <= 0:
            raise ValueError(f"stepsize must be > 0, got {self.stepsize}")
        if self.policy is LRPolicy.POLY and self.max_iter <= 0:
            raise ValueError(f"max_iter must be > 0, got {self.max_iter}")

    def reset(self) -> None:
        self.current_step = 0

    def __call__(self, iteration: int) -> float:
        policy = self.policy
        base = self.base_lr
        if policy is LRPolicy.FIXED:
            return base
        if policy is LRPolicy.STEP:
            self.current_step = iteration // self.stepsize
            return base * self.gamma ** self.current_step
        if policy is LRPolicy.EXP:
            return base * self.gamma ** iteration
        if policy is LRPolicy.INV:
            return base * (1.0 + self.gamma * iteration) ** (-self.power)
        if policy is LRPolicy.MULTISTEP:
            if self.current_step < len(self.stepvalue) and iteration >= self.stepvalue[self.current_step]:
                self.current_step += 1
                logger.info("MultiStep Status: Iteration %d, step = %d", iteration, self.current_step)
            return base * self.gamma ** self.current_step
        if policy is LRPolicy.POLY:
            return base * (1.0 - iteration / self.max_iter) ** self.power
        return base / (1.0 + math.exp(-self.gamma * (iteration - self.stepsize)))
