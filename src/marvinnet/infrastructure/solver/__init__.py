from ._lr_policy import LearningRateSchedule, LRPolicy
from ._solver import Regularizer, Solver, SolverAlgorithm

__all__ = [
    Solver.__name__,
    SolverAlgorithm.__name__,
    Regularizer.__name__,
    LearningRateSchedule.__name__,
    LRPolicy.__name__,
]
