#!/usr/bin/env python3
"""
run_accuracy_assessment.py

Scores mowing-date predictions from several groups/methods/data sources
against a reference record, by region×year with "All" rollups.
Outputs: counts CSV, metrics CSV, per-event matches CSV, run summary JSON.
"""

import argparse
import json
import os
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from mowing_accuracy_functions import (
    ALL_LABEL,
    REFERENCE_COLUMNS,
    RESULT_COLUMNS,
    SOURCE_KEY,
    load_config,
    run_assessment,
)

# Identifier columns are read as strings so MOD_ID/Region join across files
ID_DTYPES = {'MOD_ID': str, 'Region': str, 'Group': str, 'Method': str, 'Data': str}


# ============================================================================
# 1. DATA LOADING
# ============================================================================

def _read_table(path: str, name: str, required_cols: List[str]) -> pd.DataFrame:
    if not os.path.exists(path):
        raise FileNotFoundError(f"{name} file not found: {path}")

    header = pd.read_csv(path, nrows=0).columns
    df = pd.read_csv(path, dtype={c: t for c, t in ID_DTYPES.items() if c in header})

    missing_cols = set(required_cols) - set(df.columns)
    if missing_cols:
        raise ValueError(f"Missing required columns in {name.lower()} file {path}: {missing_cols}")

    print(f"  [OK] Loaded {name.lower()} from {path}: {len(df):,} rows")
    return df


def load_reference(path: str) -> pd.DataFrame:
    """
    Load the reference table (MOD_ID, Year, Date_ref).

    A Region column, when present, is kept and used instead of a mapping.
    """
    df = _read_table(path, 'Reference', REFERENCE_COLUMNS)
    keep = REFERENCE_COLUMNS + (['Region'] if 'Region' in df.columns else [])
    return df[keep]


def load_results(path: str) -> pd.DataFrame:
    """Load the results table (Region, Year, MOD_ID, Group, Method, Data, Date_pred)."""
    df = _read_table(path, 'Results', RESULT_COLUMNS)
    return df[RESULT_COLUMNS]


def load_region_map(path: str) -> pd.DataFrame:
    df = _read_table(path, 'Region mapping', ['MOD_ID', 'Region'])
    return df[['MOD_ID', 'Region']]


# ============================================================================
# 2. OUTPUTS
# ============================================================================

def save_outputs(result: Dict[str, pd.DataFrame], out_dir: str, config: Dict) -> Dict[str, str]:
    """
    Write counts, metrics, matches and a JSON run summary to out_dir.

    Returns:
        Mapping of output name -> file path
    """
    os.makedirs(out_dir, exist_ok=True)

    paths = {
        'counts': os.path.join(out_dir, 'counts.csv'),
        'metrics': os.path.join(out_dir, 'metrics.csv'),
        'matches': os.path.join(out_dir, 'matches.csv'),
        'summary': os.path.join(out_dir, 'run_summary.json'),
    }

    result['counts'].to_csv(paths['counts'], index=False)
    result['metrics'].to_csv(paths['metrics'], index=False)
    result['matches'].to_csv(paths['matches'], index=False)

    summary = {
        'config': {
            'tolerance': config['tolerance'],
            'valid_mowing_range': list(config['valid_mowing_range']),
            'event_min_difference': config['event_min_difference'],
        },
        'n_reference_events': int(len(result['reference'])),
        'n_reference_field_years': int(result['reference'][['MOD_ID', 'Year']].drop_duplicates().shape[0]),
        'n_predictions': int(len(result['predictions'])),
        'n_sources': int(result['predictions'][SOURCE_KEY].drop_duplicates().shape[0]),
        'n_matches': int(len(result['matches'])),
        'n_correct_matches': int(result['matches']['correct'].sum()),
    }
    with open(paths['summary'], 'w') as f:
        json.dump(summary, f, indent=2)

    for name, path in paths.items():
        print(f"  [OK] Saved {name}: {path}")

    return paths


def print_summary(metrics: pd.DataFrame) -> None:
    """Print overall metrics per source, then per-year metrics (all regions)."""
    print("\n" + "=" * 80)
    print("SUMMARY")
    print("=" * 80)

    overall = metrics[(metrics['Region'] == ALL_LABEL) & (metrics['Year'] == ALL_LABEL)]
    if overall.empty:
        print("\n  [WARNING] No predictions to summarise")
        return

    print(f"\n--- All regions, all years ---")
    print(f"  {'Group':<12} {'Method':<12} {'Data':<10} {'T':>6} {'TP':>6} {'P':>6} "
          f"{'Prec':>7} {'Rec':>7} {'F1':>7}")
    for _, row in overall.sort_values('F1', ascending=False, na_position='last').iterrows():
        print(f"  {row['Group']:<12} {row['Method']:<12} {row['Data']:<10} "
              f"{row['T']:6d} {row['TP']:6d} {row['P']:6d} "
              f"{row['Precision']:7.3f} {row['Recall']:7.3f} {row['F1']:7.3f}")

    by_year = metrics[(metrics['Region'] == ALL_LABEL) & (metrics['Year'] != ALL_LABEL)]
    for year in sorted(by_year['Year'].unique()):
        year_rows = by_year[by_year['Year'] == year]
        print(f"\n--- Year {year} ---")
        print(f"  Mean F1 across sources: {np.nanmean(year_rows['F1']):.4f}")
        best = year_rows.sort_values('F1', ascending=False, na_position='last').iloc[0]
        print(f"  Best source: {best['Group']} / {best['Method']} / {best['Data']} (F1 {best['F1']:.4f})")


# ============================================================================
# 3. MAIN PIPELINE
# ============================================================================

def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description='Assess mowing-date predictions against reference events by region×year'
    )
    parser.add_argument('--reference', required=True, help='Reference CSV (MOD_ID, Year, Date_ref)')
    parser.add_argument('--results', required=True,
                        help='Results CSV (Region, Year, MOD_ID, Group, Method, Data, Date_pred)')
    parser.add_argument('--region-map', default=None,
                        help='Optional MOD_ID->Region mapping CSV (default: derived from results)')
    parser.add_argument('--out-dir', required=True, help='Output directory')
    parser.add_argument('--config', default=None, help='JSON file overriding default constants')
    parser.add_argument('--tolerance', type=int, default=None,
                        help='Max day distance for a correct match (inclusive)')
    parser.add_argument('--valid-range', nargs=2, type=int, default=None, metavar=('MIN_DAY', 'MAX_DAY'),
                        help='Inclusive day-of-year window for valid mowing events')
    parser.add_argument('--min-difference', type=int, default=None,
                        help='Minimum gap (days) between reference events of a field-year')

    args = parser.parse_args(argv)

    config = load_config(args.config,
                         tolerance=args.tolerance,
                         valid_mowing_range=args.valid_range,
                         event_min_difference=args.min_difference)

    print("=" * 80)
    print("MOWING EVENT ACCURACY ASSESSMENT")
    print("=" * 80)
    print(f"\nConfig:")
    print(f"  Reference: {args.reference}")
    print(f"  Results: {args.results}")
    print(f"  Region map: {args.region_map or '(derived from results)'}")
    print(f"  Output dir: {args.out_dir}")
    print(f"  Tolerance: {config['tolerance']} days")
    print(f"  Valid mowing range: day {config['valid_mowing_range'][0]}-{config['valid_mowing_range'][1]}")
    print(f"  Min event difference: {config['event_min_difference']} days")
    print("=" * 80)

    print("\n[1/3] Loading inputs...")
    reference = load_reference(args.reference)
    results = load_results(args.results)
    region_map = load_region_map(args.region_map) if args.region_map else None

    print("\n[2/3] Running assessment...")
    result = run_assessment(reference, results, config=config, region_map=region_map)

    print("\n[3/3] Saving outputs...")
    save_outputs(result, args.out_dir, config)

    print_summary(result['metrics'])

    print("\n" + "=" * 80)
    print("DONE!")
    print("=" * 80)

    return result


if __name__ == '__main__':
    main()
