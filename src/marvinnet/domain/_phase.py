"""
Execution phase definitions.

A phase gates which nodes of a graph participate in a pass. Nodes are tagged
with one phase; the graph runs in exactly one of `Phase.TRAINING` or
`Phase.TESTING` at a time, and nodes tagged `Phase.TRAINING_TESTING` take part
in both.
"""

from __future__ import annotations

from enum import Enum


class Phase(Enum):
    """
    Execution phase of a graph or node.

    The enum values are the spellings used by the architecture description.
    """

    TRAINING = "Training"
    TESTING = "Testing"
    TRAINING_TESTING = "TrainingTesting"

    def runs_in(self, graph_phase: "Phase") -> bool:
        """
        Return True if a node tagged with this phase executes while the graph
        is in `graph_phase`.
        """
        return self is graph_phase or self is Phase.TRAINING_TESTING
