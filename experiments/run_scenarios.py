#!/usr/bin/env python3
"""
Run Bootstrap Scenarios

Runs every scenario in a YAML config through the bootstrap harness and
writes per-replicate records and aggregated summaries.

Usage:
    # Using a YAML config
    python experiments/run_scenarios.py --config experiments/configs/mnar_interaction.yaml

    # Override replicate count and parallelism
    python experiments/run_scenarios.py \
        --config experiments/configs/mar_patterns.yaml \
        --n-bootstrap 200 \
        --n-jobs 4 \
        --output results/mar/

    # Only some scenarios from a file
    python experiments/run_scenarios.py \
        --config experiments/configs/mnar_interaction.yaml \
        --scenarios mnar_weak mnar_extreme
"""

import argparse
import json
import signal
import sys
import threading
from pathlib import Path
from typing import Dict

import numpy as np
import pandas as pd

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from calibrated_fusion import (
    BootstrapHarness,
    ConfigError,
    HarnessResults,
    ScenarioInfeasible,
    load_scenarios,
)


def _json_default(x):
    if isinstance(x, np.integer):
        return int(x)
    if isinstance(x, np.floating):
        return float(x)
    if isinstance(x, np.ndarray):
        return x.tolist()
    if isinstance(x, np.bool_):
        return bool(x)
    raise TypeError(f"Object of type {type(x).__name__} is not JSON serializable")


def save_results(results: HarnessResults, output_path: Path, verbose: bool = True) -> Dict[str, Path]:
    """Write records CSV, summary CSV and a JSON dump for one scenario."""
    name = results.scenario.name
    paths = {
        'records': output_path / f'{name}_records.csv',
        'summary': output_path / f'{name}_summary.csv',
        'json': output_path / f'{name}_results.json',
    }

    results.records_frame().to_csv(paths['records'], index=False)
    results.summary().to_csv(paths['summary'], index=False)
    with open(paths['json'], 'w') as f:
        json.dump(results.to_dict(), f, indent=2, default=_json_default)

    if verbose:
        for kind, path in paths.items():
            print(f"  {kind}: {path}")
    return paths


def main():
    parser = argparse.ArgumentParser(
        description='Run bootstrap comparisons of calibration and EM estimators',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        required=True,
        help='Path to YAML scenario configuration file'
    )
    parser.add_argument(
        '--scenarios',
        type=str,
        nargs='+',
        help='Run only these scenario names (default: all in the file)'
    )
    parser.add_argument(
        '--n-bootstrap', '-n',
        type=int,
        help='Override the number of replicates per scenario'
    )
    parser.add_argument(
        '--n-jobs', '-j',
        type=int,
        default=1,
        help='Worker processes (-1 = all cores, default: 1)'
    )
    parser.add_argument(
        '--seed',
        type=int,
        help='Override the run seed of every scenario'
    )
    parser.add_argument(
        '--output', '-o',
        type=str,
        default='results/scenarios/',
        help='Output directory (default: results/scenarios/)'
    )
    parser.add_argument(
        '--quiet', '-q',
        action='store_true',
        help='Suppress progress messages'
    )

    args = parser.parse_args()
    verbose = not args.quiet

    try:
        scenarios = load_scenarios(args.config)
        overrides = {}
        if args.n_bootstrap is not None:
            overrides['n_bootstrap'] = args.n_bootstrap
        if args.seed is not None:
            overrides['seed'] = args.seed
        if overrides:
            scenarios = [s.with_updates(**overrides) for s in scenarios]
    except ConfigError as e:
        print(f"Error: invalid configuration in {args.config}: {e}")
        sys.exit(2)

    if args.scenarios:
        unknown = set(args.scenarios) - {s.name for s in scenarios}
        if unknown:
            print(f"Error: unknown scenarios {sorted(unknown)}")
            print(f"Available: {[s.name for s in scenarios]}")
            sys.exit(2)
        scenarios = [s for s in scenarios if s.name in args.scenarios]

    output_path = Path(args.output)
    output_path.mkdir(parents=True, exist_ok=True)

    if verbose:
        print("=" * 60)
        print("Bootstrap Scenario Run")
        print("=" * 60)
        print(f"Config: {args.config}")
        print(f"Scenarios: {[s.name for s in scenarios]}")
        print(f"Workers: {args.n_jobs}")
        print(f"Output: {output_path}")
        print("=" * 60)

    # Ctrl-C finishes the current replicate, keeps what is done and stops
    cancel_event = threading.Event()

    def _request_stop(signum, frame):
        print("\nStop requested; finishing current replicates...")
        cancel_event.set()

    signal.signal(signal.SIGINT, _request_stop)

    overview = []
    for scenario in scenarios:
        if cancel_event.is_set():
            break
        harness = BootstrapHarness(
            scenario,
            n_jobs=args.n_jobs,
            cancel_event=cancel_event,
            verbose=verbose
        )
        try:
            results = harness.run()
        except ScenarioInfeasible as e:
            print(f"\nScenario '{scenario.name}' skipped: {e}")
            overview.append({'scenario': scenario.name, 'status': 'infeasible'})
            continue

        print("\n" + results.get_summary())
        save_results(results, output_path, verbose=verbose)

        diag = results.diagnostics()
        means = results.metric_table('mean')
        row = {
            'scenario': scenario.name,
            'status': 'cancelled' if results.cancelled else 'completed',
            'selection': scenario.selection.label,
            'n_completed': diag['n_completed'],
            'n_failed': diag['n_failed'],
        }
        for method in means.index:
            row[f'{method}_tad'] = means.loc[method, 'tad']
            row[f'{method}_yz_tad'] = means.loc[method, 'yz_tad']
        overview.append(row)

    overview_df = pd.DataFrame(overview)
    overview_path = output_path / 'overview.csv'
    overview_df.to_csv(overview_path, index=False)

    print("\n" + "=" * 60)
    print("SUMMARY")
    print("=" * 60)
    if not overview_df.empty:
        print(overview_df.to_string(index=False, float_format=lambda v: f"{v:.4f}"))
    print(f"\nOverview saved to: {overview_path}")
    print("=" * 60)


if __name__ == '__main__':
    main()
