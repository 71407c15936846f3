#!/usr/bin/env python3
"""
cli.py — Command-line interface for the rare-event engine

Usage:
    python -m rare_event.cli solve [--threshold 6 --truncation 50]
    python -m rare_event.cli path  [--seed 7 --csv paths.csv]
    python -m rare_event.cli batch [--trials 2000 --workers 4]
"""

import argparse
import logging
import os
import sys

# Add src to path when run as a script
_src_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)

from rich.console import Console
from rich.table import Table
from rich import box

console = Console()


def _params_from_args(args):
    from rare_event.config import ModelParameters

    return ModelParameters(
        beta0=args.beta0,
        beta1=args.beta1,
        steps=args.steps,
        initial_state=args.initial,
        threshold=args.threshold,
        trials=args.trials,
    )


def _config_from_args(args):
    from rare_event.config import BatchConfig, EngineConfig

    return EngineConfig(
        truncation_n=args.truncation,
        batch=BatchConfig(n_workers=args.workers),
    )


def _print_solution(solution):
    for line in solution.log:
        style = "green" if line.startswith("√") else ("yellow" if line.startswith("Note") else "dim")
        console.print(f"  [{style}]{line}[/{style}]")
    console.print(
        f"\n[bold]θ*[/bold] = {solution.theta:.6f}   "
        f"[bold]ρ[/bold] = {solution.rho:.6f}   "
        f"[dim]status: {solution.root.status}, truncation tail mass {solution.truncation_tail_mass:.2e}[/dim]"
    )


def cmd_solve(args):
    """Solve θ* and the eigenpair."""
    from rare_event.engine import solve

    params = _params_from_args(args)
    config = _config_from_args(args)
    with console.status("[cyan]Solving for the optimal tilt...[/cyan]"):
        solution = solve(params, config.truncation_n, config)
    _print_solution(solution)
    return solution


def cmd_path(args):
    """Simulate one natural and one twisted trajectory."""
    import numpy as np
    import pandas as pd
    from rare_event.engine import RareEventEngine

    engine = RareEventEngine(_params_from_args(args), _config_from_args(args))
    with console.status("[cyan]Solving for the optimal tilt...[/cyan]"):
        solution = engine.solve()
    natural_seed, twisted_seed = np.random.SeedSequence(args.seed).spawn(2)
    natural = engine.simulate_natural(natural_seed)
    twisted = engine.simulate_twisted(twisted_seed)

    table = Table(title=f"Single paths (a = {args.threshold:g}, θ* = {solution.theta:.4f})", box=box.ROUNDED)
    table.add_column("Measure")
    table.add_column("S_n/n", justify="right")
    table.add_column("max X_t", justify="right")
    table.add_column("Steps above a", justify="right")
    table.add_column("Hit", justify="center")
    table.add_column("L = dP/dQ", justify="right")
    for traj in (natural, twisted):
        lr = traj.likelihood_ratio
        table.add_row(
            traj.measure,
            f"{traj.final_mean:.3f}",
            str(int(traj.x.max())),
            str(int(traj.is_rare.sum())),
            "[green]yes[/green]" if traj.hit else "[dim]no[/dim]",
            f"{lr:.3e}" if lr is not None else "-",
        )
    console.print(table)

    if args.csv:
        frame = pd.concat(
            [natural.to_frame().assign(measure="natural"), twisted.to_frame().assign(measure="twisted")],
            ignore_index=True,
        )
        frame.to_csv(args.csv, index=False)
        console.print(f"[dim]Wrote {len(frame)} rows to {args.csv}[/dim]")
    return natural, twisted


def cmd_batch(args):
    """Compare naive Monte Carlo against importance sampling."""
    from rich.progress import Progress, SpinnerColumn, BarColumn, TextColumn, TimeElapsedColumn, MofNCompleteColumn
    from rare_event.analysis import assess_efficiency
    from rare_event.engine import RareEventEngine

    engine = RareEventEngine(_params_from_args(args), _config_from_args(args))
    with console.status("[cyan]Solving for the optimal tilt...[/cyan]"):
        solution = engine.solve()
    if args.verbose:
        _print_solution(solution)

    with Progress(
        SpinnerColumn(spinner_name="dots", style="cyan"),
        BarColumn(bar_width=40, complete_style="cyan", finished_style="green"),
        TextColumn("[bold]{task.percentage:>5.1f}%[/bold]"),
        TextColumn("[dim]·[/dim]"),
        MofNCompleteColumn(),
        TextColumn("[dim]·[/dim]"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("", total=2 * args.trials)
        comparison = engine.run_batch(
            seed=args.seed,
            progress=lambda done, total: progress.update(task, completed=done),
        )

    table = Table(title=f"P(S_n/n > {args.threshold:g}) with M = {args.trials}", box=box.ROUNDED)
    table.add_column("Estimator")
    table.add_column("Estimate", justify="right")
    table.add_column("Variance", justify="right")
    table.add_column("95% CI", justify="right")
    table.add_column("Hits", justify="right")
    for result in (comparison.naive, comparison.importance_sampled):
        lo, hi = result.confidence_interval
        table.add_row(
            result.measure,
            f"{result.estimated_probability:.4e}",
            f"{result.variance:.3e}",
            f"[{lo:.3e}, {hi:.3e}]",
            str(result.total_hits),
        )
    console.print(table)

    assessment = assess_efficiency(
        comparison.naive, comparison.importance_sampled, comparison.theta, args.threshold,
    )
    colors = {"excellent": "green", "good": "blue", "degenerate": "yellow", "inefficient": "red"}
    color = colors.get(assessment.rating, "white")
    console.print(f"\n[bold {color}]VRF = {assessment.vrf:.2f}x ({assessment.rating})[/bold {color}]")
    console.print(f"  {assessment.summary}")
    mean_lr = comparison.importance_sampled.mean_likelihood_ratio
    console.print(f"[dim]  mean L under Q = {mean_lr:.4f} (≈ 1 expected)[/dim]")
    return comparison


def build_parser():
    parser = argparse.ArgumentParser(
        description="LDP-guided importance sampling for Poisson AR(1) rare events",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    %(prog)s solve                          Solve θ* for the default scenario
    %(prog)s solve --threshold 8 --truncation 80
    %(prog)s path --seed 7 --csv paths.csv  One natural and one twisted path
    %(prog)s batch --trials 5000 --workers 4
        """
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--beta0", type=float, default=2.0, help="Baseline intensity β0")
    common.add_argument("--beta1", type=float, default=0.5, help="Feedback coefficient β1")
    common.add_argument("--steps", type=int, default=100, help="Horizon n")
    common.add_argument("--initial", type=int, default=1, help="Initial state X0")
    common.add_argument("--threshold", type=float, default=6.0, help="Threshold a for S_n/n")
    common.add_argument("--trials", type=int, default=2000, help="Monte Carlo trials M")
    common.add_argument("--truncation", type=int, default=50, help="Truncation size N")
    common.add_argument("--seed", type=int, default=None, help="Random seed")
    common.add_argument("--workers", type=int, default=1, help="Worker processes for batches")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    subparsers.add_parser("solve", parents=[common], help="Solve θ* and (ρ, h)")
    path_parser = subparsers.add_parser("path", parents=[common], help="Simulate single trajectories")
    path_parser.add_argument("--csv", type=str, default=None, help="Export both paths to CSV")
    subparsers.add_parser("batch", parents=[common], help="Naive vs IS batch comparison")
    return parser


def main(argv=None):
    from rare_event.errors import RareEventError

    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {"solve": cmd_solve, "path": cmd_path, "batch": cmd_batch}
    if args.command not in commands:
        parser.print_help()
        return 1

    try:
        commands[args.command](args)
    except RareEventError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        for line in getattr(e, "log", []):
            console.print(f"  [dim]{line}[/dim]")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
