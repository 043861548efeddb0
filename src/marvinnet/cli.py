"""
marvinnet command line interface.

    marvinnet train NET.json [--weights W] [--iter N]
    marvinnet test NET.json WEIGHTS [--response NAME FILE ...] [--iters-per-save N]

Any fatal engine error releases the device contexts and exits with
status 1.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from .domain._errors import FatalError
from .domain._phase import Phase
from .infrastructure.net import Net
from .infrastructure.solver import Solver

logger = logging.getLogger("marvinnet")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="marvinnet",
        description="marvinnet - multi-replica neural network training engine",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="count",
        default=0,
        help="Log progress (-v) or debug details (-vv)",
    )
    parser.add_argument("--version", action="store_true", help="Show version information")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    train_parser = subparsers.add_parser("train", help="Train a network")
    train_parser.add_argument("net", help="Architecture description (JSON)")
    train_parser.add_argument("--weights", default=None, help="Initial weights instead of random init")
    train_parser.add_argument("--iter", type=int, default=0, help="First iteration (default: 0)")
    train_parser.add_argument("--seed", type=int, default=None, help="Random seed of replica 0")

    test_parser = subparsers.add_parser("test", help="Test a network or extract features")
    test_parser.add_argument("net", help="Architecture description (JSON)")
    test_parser.add_argument("weights", help="Weights file")
    test_parser.add_argument(
        "--response",
        nargs=2,
        action="append",
        default=[],
        metavar=("NAME", "FILE"),
        help="Save the activations of response NAME to FILE (repeatable)",
    )
    test_parser.add_argument(
        "--iters-per-save",
        type=int,
        default=0,
        help="Start a new feature file every N iterations (default: one file)",
    )
    return parser


def _run_train(args: argparse.Namespace) -> int:
    with Solver.from_file(args.net, seed=args.seed) as solver:
        solver.allocate(Phase.TRAINING)
        if args.weights:
            solver.load_weights(args.weights)
        else:
            solver.rand_init()
        solver.train(args.iter)
        solver.save_weights(f"{solver.path}.marvin")
    return 0


def _run_test(args: argparse.Namespace) -> int:
    names = [name for name, _ in args.response]
    files = [path for _, path in args.response]
    with Net.from_file(args.net) as net:
        net.allocate(Phase.TESTING)
        net.load_weights(args.weights)
        net.test(names, files, args.iters_per_save)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point of the `marvinnet` console script."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    level = logging.WARNING if args.verbose == 0 else logging.INFO if args.verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.version:
        from . import __version__

        print(f"marvinnet v{__version__}")
        return 0

    try:
        if args.command == "train":
            return _run_train(args)
        if args.command == "test":
            return _run_test(args)
    except FatalError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        return 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
