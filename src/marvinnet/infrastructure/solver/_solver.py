"""
Multi-replica trainer.

A `Solver` builds one `Net` per entry of the `GPU` list of the "train"
block and keeps one canonical parameter set for all of them. Per trainable
parameter it allocates one ``(N + 1, numel)`` region on the solver device:
row 0 is the shared history and row ``k + 1`` the gradient of replica
``k``. Each iteration every replica runs its forward/backward passes on its
own thread, then a single update computes the history from all N gradients,
and every replica applies it at the start of its next step.

Design notes
------------
- Replica threads are started per step and joined before the next step,
  so the central update never overlaps a backward pass.
- With a single replica living on the solver device no threads are used.
- Metrics reported by the replicas are averaged, so N replicas reporting
  the same value report exactly that value.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, Dict, List, Optional

from ...domain._errors import ConfigError, FatalError, NotImplementedModeError, PeerAccessError
from ...domain._phase import Phase
from .._description import NetDescription
from ..buffer import FLOAT, read_buffers
from ..device._backend import NumpyBackend
from ..device._context import DeviceContext
from ..layers._loss import Loss
from ..net._net import Net, format_bytes
from ..optimizers._sgd import SGD, SharedParameter
from ._lr_policy import LearningRateSchedule, LRPolicy

logger = logging.getLogger(__name__)

_RULE = "=" * 100


class SolverAlgorithm(Enum):
    SGD = "SGD"
    ADAGRAD = "AdaGrad"
    NAG = "NAG"


class Regularizer(Enum):
    L2 = "L2"
    L1 = "L1"


class Solver:
    """
    Trainer coordinating several graph replicas that share parameters.

    Parameters
    ----------
    description : NetDescription
        Architecture description. The "train" block configures the solver.
    backend : NumpyBackend, optional
        Device backend. A default backend is created if omitted.
    seed : int, optional
        Seed of replica 0's random generator; replica ``k`` uses
        ``seed + k``.

    Raises
    ------
    ConfigError
        If `path` is missing, the device list is empty or names a device the
        backend does not have.
    NotImplementedModeError
        For any solver and regularizer pair other than SGD with L2, and for
        the cyclical learning-rate policy.
    PeerAccessError
        If a replica device cannot address the solver device.
    """

    def __init__(
        self,
        description: NetDescription,
        *,
        backend: Optional[NumpyBackend] = None,
        seed: Optional[int] = None,
    ) -> None:
        train = description.train_reader()
        self.solver = train.get_enum("solver", SolverAlgorithm, SolverAlgorithm.SGD)
        self.regularizer = train.get_enum("regularizer", Regularizer, Regularizer.L2)
        self.momentum = train.get_float("momentum", 0.9)
        self.weight_decay = train.get_float("weight_decay", 0.0005)
        self.train_iter = train.get_int("train_iter", 1)
        self.max_iter = train.get_int("max_iter", 10000)
        self.snapshot_iter = train.get_int("snapshot_iter", 5000)
        self.display_iter = train.get_int("display_iter", 100)
        self.test_iter = train.get_int("test_iter", 100)
        self.test_interval = train.get_int("test_interval", 500)
        self.debug_mode = train.get_bool("debug_mode", False)
        self.devices: List[int] = train.get_list("GPU", [0])
        self.path = train.get_str("path")
        self.solver_device = train.get_int("GPU_solver", -1)

        try:
            self.schedule = LearningRateSchedule(
                policy=train.get_enum("lr_policy", LRPolicy, LRPolicy.INV),
                base_lr=train.get_float("base_lr", 0.01),
                gamma=train.get_float("lr_gamma", 0.0001),
                power=train.get_float("lr_power", 0.75),
                stepsize=train.get_int("lr_stepsize", 100000),
                stepvalue=train.get_list("stepvalue", []),
                max_iter=self.max_iter,
            )
        except ValueError as e:
            raise ConfigError(str(e), where="train") from e

        for name in ("train_iter", "test_iter", "test_interval", "snapshot_iter", "display_iter"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1, got {getattr(self, name)}", where="train")
        if not self.devices:
            raise ConfigError("GPU list is empty", where="train")
        if self.solver is not SolverAlgorithm.SGD or self.regularizer is not Regularizer.L2:
            raise NotImplementedModeError(
                f"no update rule for solver {self.solver.value} with regularizer {self.regularizer.value}",
                where="train",
            )
        if self.solver_device == -1:
            self.solver_device = self.devices[0]

        self.backend = backend if backend is not None else NumpyBackend()
        count = self.backend.device_count()
        logger.info("There %s %d device(s) available in this machine.", "is" if count == 1 else "are", count)
        largest = max(self.devices)
        if largest >= count:
            raise ConfigError(
                f"largest device id request for device #{largest} exceeds the number of available devices ({count})"
            )

        self.single_device = len(self.devices) == 1 and self.solver_device == self.devices[0]
        self.solver_context = DeviceContext(self.solver_device, backend=self.backend)
        self.nets: List[Net] = []
        context: Optional[DeviceContext] = None
        try:
            for k, device_id in enumerate(self.devices):
                context = DeviceContext(
                    device_id, backend=self.backend, seed=None if seed is None else seed + k
                )
                self.nets.append(
                    Net(
                        description,
                        context,
                        debug_mode=self.debug_mode,
                        train_iter=self.train_iter,
                        test_iter=self.test_iter,
                    )
                )
                context = None

            for device_id in self.devices:
                if device_id != self.solver_device and not self.backend.can_access_peer(device_id, self.solver_device):
                    raise PeerAccessError(device_id, self.solver_device)
        except FatalError:
            if context is not None:
                context.close()
            self.close()
            raise

        self.phase = Phase.TRAINING
        self.iter = 0
        self.update_rule: Optional[SGD] = None

    @classmethod
    def from_file(
        cls, path: str, *, backend: Optional[NumpyBackend] = None, seed: Optional[int] = None
    ) -> "Solver":
        return cls(NetDescription.from_file(path), backend=backend, seed=seed)

    @property
    def current_step(self) -> int:
        return self.schedule.current_step

    def learning_rate(self) -> float:
        """Learning rate of the current iteration."""
        return self.schedule(self.iter)

    # ---- allocation ----
    def allocate(self, phase: Phase = Phase.TRAINING) -> int:
        """
        Allocate every replica and, unless testing, the shared parameter
        regions.

        Returns
        -------
        int
            Bytes held across all replicas and the solver device.
        """
        self.phase = phase
        for net in self.nets:
            net.allocate(phase)

        if phase is not Phase.TESTING and self.update_rule is None:
            self.update_rule = SGD(
                self._bind_regions(), momentum=self.momentum, weight_decay=self.weight_decay
            )
            self.update_rule.clear_history()

        per_device: Dict[int, int] = {}
        for device_id, net in zip(self.devices, self.nets):
            per_device[device_id] = per_device.get(device_id, 0) + net.context.reserved_bytes
        per_device[self.solver_device] = (
            per_device.get(self.solver_device, 0) + self.solver_context.reserved_bytes
        )

        logger.info(_RULE)
        for device_id in sorted(per_device):
            if per_device[device_id] > 0:
                logger.info("Device %d: Total memory: %s", device_id, format_bytes(per_device[device_id]))
        total = sum(per_device.values())
        logger.info("All devices: Total memory: %s", format_bytes(total))
        return total

    def _bind_regions(self) -> List[SharedParameter]:
        shared: List[SharedParameter] = []
        n = len(self.nets)
        for l, layer in enumerate(self.nets[0].layers):
            if not layer.train_me:
                continue
            for k, canonical in enumerate(layer.parameters()):
                if canonical.numel == 0:
                    continue
                region = self.solver_context.zeros((n + 1, canonical.numel))
                for replica, net in enumerate(self.nets):
                    net.layers[l].parameters()[k].bind_region(region, replica)
                shared.append((canonical, region))
        return shared

    # ---- parameters ----
    def rand_init(self) -> None:
        """Initialize replica 0 and copy its parameters to every other replica."""
        self.nets[0].rand_init()
        for net in self.nets[1:]:
            for source, target in zip(self.nets[0].layers, net.layers):
                for p, q in zip(source.parameters(), target.parameters()):
                    if p.data is not None:
                        q.load(p.data)

    def load_weights(self, path: str, diff: bool = False) -> None:
        buffers = read_buffers(path, FLOAT)
        for net in self.nets:
            net.load_weights(buffers, diff)

    def save_weights(self, path: str, diff: bool = False) -> None:
        self.nets[0].save_weights(path, diff)

    def update(self, lr: float) -> None:
        """Compute the shared history of every trainable parameter."""
        if self.update_rule is not None:
            self.update_rule.step(lr)

    # ---- replicas ----
    def _run(self, step: Callable[[Net], None]) -> None:
        if self.single_device:
            step(self.nets[0])
            return
        with ThreadPoolExecutor(max_workers=len(self.nets)) as executor:
            futures = [executor.submit(step, net) for net in self.nets]
            for future in futures:
                future.result()

    def average_losses(self, phase: Phase) -> List[Loss]:
        """
        Average `result` and `loss` of every loss layer running in `phase`
        over the replicas, into replica 0's layers, and return those layers.
        """
        averaged: List[Loss] = []
        n = len(self.nets)
        for l, layer in enumerate(self.nets[0].loss_layers):
            if not layer.phase.runs_in(phase):
                continue
            for net in self.nets[1:]:
                layer.result += net.loss_layers[l].result
                layer.loss += net.loss_layers[l].loss
            layer.result /= n
            layer.loss /= n
            averaged.append(layer)
        return averaged

    def test_step(self) -> List[Loss]:
        """Run `step_test` on every replica and return the averaged loss layers."""
        for net in self.nets:
            net.phase = Phase.TESTING
        try:
            self._run(Net.step_test)
        finally:
            for net in self.nets:
                net.phase = Phase.TRAINING
        return self.average_losses(Phase.TESTING)

    # ---- training ----
    def train(self, iter_begin: int = 0) -> None:
        """
        Train from `iter_begin` through `max_iter` inclusive.

        Tests every `test_interval` iterations, snapshots to
        ``"{path}_snapshot_{iter}.marvin"`` every `snapshot_iter` iterations
        (not at `iter_begin`) and logs the averaged training losses every
        `display_iter` iterations.
        """
        self.phase = Phase.TRAINING
        self.schedule.reset()
        logger.info(_RULE)
        logger.info("  Training / Testing")
        logger.info(_RULE)

        for self.iter in range(iter_begin, self.max_iter + 1):
            if self.iter % self.test_interval == 0:
                losses = self.test_step()
                logger.info(
                    "Testing Iteration %d %s", self.iter, "".join(layer.display() for layer in losses)
                )

            self._run(Net.step_train)
            lr = self.learning_rate()
            self.update(lr)
            self.solver_context.synchronize()

            if self.iter != iter_begin and self.iter % self.snapshot_iter == 0:
                self.save_weights(f"{self.path}_snapshot_{self.iter}.marvin")

            if self.iter % self.display_iter == 0:
                self._run(Net.eval)
                losses = self.average_losses(Phase.TRAINING)
                logger.info(
                    "Iteration %d  learning_rate = %g%s",
                    self.iter,
                    lr,
                    "".join(layer.display() for layer in losses),
                )

    # ---- teardown ----
    def close(self) -> None:
        for net in self.nets:
            net.close()
            net.context.close()
        self.solver_context.close()

    def __enter__(self) -> "Solver":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Solver(devices={self.devices}, solver_device={self.solver_device}, iter={self.iter})"
