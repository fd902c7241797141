#!/usr/bin/env python3
"""
Run the pika haypile analysis end to end.

Steps:
1. Load the survey, site and daily climate workbooks
2. Reshape surveys to one row per site and year, join site attributes
3. Summarize climate into seasonal yearly statistics
4. Exploratory summaries (year totals, paired change, correlations, VIF)
5. Exhaustive subset selection of the count GLMM (and the presence GLMM)
6. Residual diagnostics, marginal means and effect curves for the top models

The count-model family is an analyst decision: run with the default, review
count_family_comparison.csv and the residual tests, and rerun with --family if
needed.

Usage:
    python scripts/run_haypile_analysis.py
    python scripts/run_haypile_analysis.py --data-dir data/raw --output-dir data/processed/analysis_outputs
    python scripts/run_haypile_analysis.py --family poisson
    python scripts/run_haypile_analysis.py --survey surveys.xlsx --sites sites.xlsx --climate climate.xlsx
    python scripts/run_haypile_analysis.py --no-presence --no-plots --n-sim 500
"""

import argparse
import logging
import sys
from pathlib import Path

from haypile import config
from haypile.modeling.families import FAMILIES
from haypile.modeling.selection import CRITERIA
from haypile.pipeline import HaypileAnalysis


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Pika haypile survey analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        '--data-dir',
        type=Path,
        default=config.DATA_DIR,
        help=f'Directory holding the three input workbooks (default: {config.DATA_DIR})'
    )
    parser.add_argument('--survey', type=Path, default=None,
                        help=f'Survey workbook (default: <data-dir>/{config.SURVEY_FILE})')
    parser.add_argument('--sites', type=Path, default=None,
                        help=f'Site attribute workbook (default: <data-dir>/{config.SITES_FILE})')
    parser.add_argument('--climate', type=Path, default=None,
                        help=f'Daily climate workbook (default: <data-dir>/{config.CLIMATE_FILE})')
    parser.add_argument(
        '--output-dir', '-o',
        type=Path,
        default=config.OUTPUT_DIR,
        help=f'Output directory (default: {config.OUTPUT_DIR})'
    )
    parser.add_argument(
        '--family',
        choices=sorted(set(FAMILIES) - {"binomial", "logistic"}),
        default=config.DEFAULT_FAMILY,
        help=f'Count model family (default: {config.DEFAULT_FAMILY})'
    )
    parser.add_argument('--criterion', choices=CRITERIA, default=config.DEFAULT_CRITERION,
                        help=f'Model ranking criterion (default: {config.DEFAULT_CRITERION})')
    parser.add_argument('--n-sim', type=int, default=config.N_SIMULATIONS,
                        help=f'Simulations for residual diagnostics (default: {config.N_SIMULATIONS})')
    parser.add_argument('--seed', type=int, default=config.RANDOM_SEED,
                        help=f'Random seed (default: {config.RANDOM_SEED})')
    parser.add_argument('--no-presence', action='store_true',
                        help='Skip the presence/absence model')
    parser.add_argument('--no-plots', action='store_true', help='Write tables only')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    survey = args.survey or args.data_dir / config.SURVEY_FILE
    sites = args.sites or args.data_dir / config.SITES_FILE
    climate = args.climate or args.data_dir / config.CLIMATE_FILE

    for path in (survey, sites, climate):
        if not path.exists():
            print(f"Error: Input file not found: {path}")
            return 1

    analysis = HaypileAnalysis(
        survey_path=survey,
        sites_path=sites,
        climate_path=climate,
        output_dir=args.output_dir,
        family=args.family,
        criterion=args.criterion,
        n_sim=args.n_sim,
        seed=args.seed,
        fit_presence=not args.no_presence,
        make_plots=not args.no_plots,
    )
    analysis.run()
    return 0


if __name__ == '__main__':
    sys.exit(main())
