#!/usr/bin/env python3
"""
test_cli.py — Smoke tests for the rare-event command line
"""

import os
import sys

import pandas as pd

# Add src to path
_src_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)

from rare_event.cli import build_parser, main


class TestParser:
    """Argument defaults match the reference scenario."""

    def test_defaults(self):
        args = build_parser().parse_args(["batch"])
        assert args.command == "batch"
        assert (args.beta0, args.beta1, args.steps, args.initial) == (2.0, 0.5, 100, 1)
        assert (args.threshold, args.trials, args.truncation, args.workers) == (6.0, 2000, 50, 1)
        assert args.seed is None
        assert not args.verbose


class TestCommands:
    """Each subcommand runs end to end."""

    def test_no_command(self):
        assert main([]) == 1

    def test_solve(self):
        assert main(["solve", "--threshold", "6"]) == 0

    def test_infeasible_threshold_exits_nonzero(self):
        assert main(["solve", "--threshold", "60"]) == 1

    def test_invalid_parameters_exit_nonzero(self):
        assert main(["solve", "--steps", "0"]) == 1

    def test_path_exports_csv(self, tmp_path):
        out = tmp_path / "paths.csv"
        assert main(["path", "--steps", "30", "--seed", "3", "--csv", str(out)]) == 0
        frame = pd.read_csv(out)
        assert len(frame) == 60
        assert set(frame["measure"]) == {"natural", "twisted"}
        assert {"t", "Xt", "lambda", "runningMean", "isRare"} <= set(frame.columns)

    def test_batch(self):
        assert main(["-v", "batch", "--steps", "20", "--trials", "300", "--seed", "1"]) == 0
