"""
mowing_accuracy_functions.py

Core functions for scoring mowing-date predictions against a reference record.

Pipeline (each stage is a pure DataFrame -> DataFrame step):
1. clean_reference:      window filter + drop ambiguous field-years
2. filter_predictions:   dedupe, window filter, drop NA, restrict to covered region×year
3. match_events:         nearest prediction per (reference event, evaluation group)
4. count_events:         T / TP / P / FP per (Group, Region, Year, Method, Data)
5. rollup_counts:        add "All" rows over Region and/or Year
6. compute_metrics:      Precision / Recall / F1
"""

import json
import os
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd


# ============================================================================
# CONFIGURATION
# ============================================================================

# Maximum |Date_ref - Date_pred| (days, inclusive) for a correct match
TOLERANCE = 12

# Inclusive day-of-year window for plausible mowing events
VALID_MOWING_RANGE = (91, 304)

# Minimum gap (days) between two reference events of the same field-year
EVENT_MIN_DIFFERENCE = 15

ALL_LABEL = 'All'

REFERENCE_COLUMNS = ['MOD_ID', 'Year', 'Date_ref']
RESULT_COLUMNS = ['Region', 'Year', 'MOD_ID', 'Group', 'Method', 'Data', 'Date_pred']

# Evaluation group: the unit predictions are scored under
GROUP_KEY = ['Group', 'Region', 'Year', 'Method', 'Data']
# Prediction source, independent of region/year
SOURCE_KEY = ['Group', 'Method', 'Data']
COUNT_COLUMNS = ['T', 'TP', 'P', 'FP']
METRIC_COLUMNS = ['Precision', 'Recall', 'F1']

DEFAULT_CONFIG = {
    'tolerance': TOLERANCE,
    'valid_mowing_range': VALID_MOWING_RANGE,
    'event_min_difference': EVENT_MIN_DIFFERENCE,
}


def validate_config(config: Dict) -> Dict:
    """
    Check and normalise an assessment configuration.

    Returns:
        Copy of config with valid_mowing_range as a (min_day, max_day) tuple

    Raises:
        ValueError: If a key is missing or a value is out of range
    """
    missing = set(DEFAULT_CONFIG) - set(config)
    if missing:
        raise ValueError(f"Missing configuration keys: {sorted(missing)}")

    config = dict(config)

    for key in ['tolerance', 'event_min_difference']:
        value = config[key]
        if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 0:
            raise ValueError(f"'{key}' must be a non-negative integer. Got: {value!r}")
        config[key] = int(value)

    valid_range = config['valid_mowing_range']
    if not isinstance(valid_range, (list, tuple)) or len(valid_range) != 2:
        raise ValueError(f"'valid_mowing_range' must be [min_day, max_day]. Got: {valid_range!r}")
    min_day, max_day = int(valid_range[0]), int(valid_range[1])
    if not 1 <= min_day <= max_day <= 366:
        raise ValueError(f"'valid_mowing_range' must satisfy 1 <= min <= max <= 366. Got: ({min_day}, {max_day})")
    config['valid_mowing_range'] = (min_day, max_day)

    return config


def load_config(config_path: Optional[str] = None, **overrides) -> Dict:
    """
    Build the assessment configuration.

    Precedence: keyword overrides > JSON file > module defaults.
    Overrides that are None are ignored so argparse defaults can be passed through.
    """
    config = dict(DEFAULT_CONFIG)

    if config_path is not None:
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with open(config_path, 'r') as f:
            file_config = json.load(f)
        unknown = set(file_config) - set(DEFAULT_CONFIG)
        if unknown:
            raise ValueError(f"Unknown configuration keys in {config_path}: {sorted(unknown)}")
        config.update(file_config)

    config.update({k: v for k, v in overrides.items() if v is not None})
    return validate_config(config)


# ============================================================================
# 1. REFERENCE CLEANING
# ============================================================================

def _to_whole_number(values: pd.Series) -> pd.Series:
    """Numeric values with non-numeric and fractional entries set to NaN."""
    numeric = pd.to_numeric(values, errors='coerce')
    return numeric.where(numeric % 1 == 0)


def clean_reference(reference: pd.DataFrame,
                    valid_range: Tuple[int, int] = VALID_MOWING_RANGE,
                    min_difference: int = EVENT_MIN_DIFFERENCE,
                    verbose: bool = True) -> pd.DataFrame:
    """
    Validate and deduplicate reference mowing events per field-year.

    A field-year whose events are closer than min_difference days anywhere is
    dropped as a whole, not just the offending pair.

    Args:
        reference: Raw reference rows with MOD_ID, Year, Date_ref
        valid_range: Inclusive (min_day, max_day) window
        min_difference: Minimum allowed gap between consecutive events

    Returns:
        Cleaned reference sorted by (MOD_ID, Year, Date_ref). Extra columns
        (e.g. Region) are kept.
    """
    missing_cols = set(REFERENCE_COLUMNS) - set(reference.columns)
    if missing_cols:
        raise ValueError(f"Missing required columns in reference: {missing_cols}")

    min_day, max_day = valid_range
    ref = reference.copy()
    rows_in = len(ref)

    # Malformed values (non-numeric or fractional) become NaN and are dropped with the missing ones
    ref['Year'] = _to_whole_number(ref['Year'])
    ref['Date_ref'] = _to_whole_number(ref['Date_ref'])
    ref = ref.dropna(subset=REFERENCE_COLUMNS)
    n_missing = rows_in - len(ref)

    in_window = ref['Date_ref'].between(min_day, max_day)
    n_out_of_window = int((~in_window).sum())
    ref = ref[in_window].astype({'Year': int, 'Date_ref': int})

    ref = ref.sort_values(['MOD_ID', 'Year', 'Date_ref'], kind='mergesort').reset_index(drop=True)

    gaps = ref.groupby(['MOD_ID', 'Year'], sort=False)['Date_ref'].diff()
    too_close = gaps < min_difference
    ambiguous = too_close.groupby([ref['MOD_ID'], ref['Year']]).transform('any').astype(bool)

    n_ambiguous_field_years = ref.loc[ambiguous, ['MOD_ID', 'Year']].drop_duplicates().shape[0]
    n_ambiguous_events = int(ambiguous.sum())
    ref = ref[~ambiguous].reset_index(drop=True)

    if verbose:
        print("\nCleaning reference events...")
        print(f"  Raw reference rows: {rows_in:,}")
        if n_missing:
            print(f"  [WARNING] Dropped {n_missing:,} rows with missing/malformed values")
        if n_out_of_window:
            print(f"  [WARNING] Dropped {n_out_of_window:,} events outside day {min_day}-{max_day}")
        if n_ambiguous_field_years:
            print(f"  [WARNING] Excluded {n_ambiguous_field_years:,} field-years "
                  f"({n_ambiguous_events:,} events) with gaps < {min_difference} days")
        print(f"  [OK] Cleaned reference: {len(ref):,} events, "
              f"{ref[['MOD_ID', 'Year']].drop_duplicates().shape[0]:,} field-years")

    return ref


# ============================================================================
# 2. REGION ENRICHMENT
# ============================================================================

def derive_region_map(results: pd.DataFrame) -> pd.DataFrame:
    """Distinct MOD_ID -> Region pairs seen in the results table."""
    return results[['MOD_ID', 'Region']].dropna().drop_duplicates().reset_index(drop=True)


def enrich_reference_with_region(reference: pd.DataFrame,
                                 region_map: pd.DataFrame,
                                 strict: bool = True,
                                 verbose: bool = True) -> pd.DataFrame:
    """
    Attach Region to reference events through a MOD_ID -> Region mapping.

    A MOD_ID mapped to several regions is rejected when strict, and dropped
    from the mapping with a warning otherwise. Unmapped reference events are
    dropped.

    Raises:
        ValueError: If the mapping lacks columns, or is ambiguous and strict
    """
    if not {'MOD_ID', 'Region'}.issubset(region_map.columns):
        raise ValueError(f"Region mapping must have 'MOD_ID' and 'Region' columns. "
                         f"Found: {region_map.columns.tolist()}")

    mapping = region_map[['MOD_ID', 'Region']].dropna().drop_duplicates()
    ambiguous = mapping.loc[mapping['MOD_ID'].duplicated(), 'MOD_ID'].unique()
    if len(ambiguous) > 0:
        if strict:
            raise ValueError(f"Region mapping assigns several regions to MOD_IDs: {ambiguous[:10].tolist()}")
        mapping = mapping[~mapping['MOD_ID'].isin(ambiguous)]

    rows_before = len(reference)
    ref = reference.drop(columns=['Region'], errors='ignore')
    ref = ref.merge(mapping, on='MOD_ID', how='left', validate='m:1')

    if len(ref) != rows_before:
        raise ValueError(f"Merge changed row count: {rows_before} → {len(ref)}")

    unmapped = ref['Region'].isna()
    if verbose:
        print("\nEnriching reference with region mapping...")
        print(f"  Loaded mapping: {len(mapping):,} MOD_IDs → {mapping['Region'].nunique()} regions")
        if len(ambiguous) > 0:
            print(f"  [WARNING] Dropped {len(ambiguous):,} MOD_IDs listed under several regions "
                  f"(sample: {ambiguous[:10].tolist()})")
        if unmapped.any():
            sample = ref.loc[unmapped, 'MOD_ID'].unique()[:10]
            print(f"  [WARNING] Unmapped reference events: {unmapped.sum():,} "
                  f"(sample MOD_IDs: {sample.tolist()})")

    ref = ref[~unmapped].reset_index(drop=True)

    if verbose:
        print(f"  [OK] Reference events with region: {len(ref):,}")

    return ref


# ============================================================================
# 3. PREDICTION FILTERING
# ============================================================================

def filter_predictions(results: pd.DataFrame,
                       reference: pd.DataFrame,
                       valid_range: Tuple[int, int] = VALID_MOWING_RANGE,
                       verbose: bool = True) -> pd.DataFrame:
    """
    Restrict predictions to valid rows in region×year pairs covered by the reference.

    Steps, in order: drop exact duplicates, drop dates outside valid_range,
    drop rows with missing fields, semi-join on (Region, Year) against the
    cleaned reference. Field-level overlap is not required here.

    Args:
        results: Raw results rows (RESULT_COLUMNS)
        reference: Cleaned reference carrying a Region column
        valid_range: Inclusive (min_day, max_day) window

    Returns:
        Filtered predictions in input order, with a pred_id column (0..n-1)
    """
    missing_cols = set(RESULT_COLUMNS) - set(results.columns)
    if missing_cols:
        raise ValueError(f"Missing required columns in results: {missing_cols}")
    if 'Region' not in reference.columns:
        raise ValueError("Reference must carry a 'Region' column. Run enrich_reference_with_region first.")

    min_day, max_day = valid_range
    preds = results[RESULT_COLUMNS].copy()
    rows_in = len(preds)

    preds = preds.drop_duplicates()
    n_duplicates = rows_in - len(preds)

    preds['Year'] = _to_whole_number(preds['Year'])
    preds['Date_pred'] = _to_whole_number(preds['Date_pred'])

    in_window = preds['Date_pred'].between(min_day, max_day) | preds['Date_pred'].isna()
    n_out_of_window = int((~in_window).sum())
    preds = preds[in_window]

    rows_before_na = len(preds)
    preds = preds.dropna()
    n_missing = rows_before_na - len(preds)
    preds = preds.astype({'Year': int, 'Date_pred': int})

    covered = reference[['Region', 'Year']].drop_duplicates()
    rows_before_join = len(preds)
    preds = preds.merge(covered, on=['Region', 'Year'], how='inner', validate='m:1')
    n_uncovered = rows_before_join - len(preds)

    preds = preds.reset_index(drop=True)
    preds['pred_id'] = np.arange(len(preds))

    if verbose:
        print("\nFiltering predictions...")
        print(f"  Raw prediction rows: {rows_in:,}")
        if n_duplicates:
            print(f"  [WARNING] Dropped {n_duplicates:,} exact duplicate rows")
        if n_out_of_window:
            print(f"  [WARNING] Dropped {n_out_of_window:,} predictions outside day {min_day}-{max_day}")
        if n_missing:
            print(f"  [WARNING] Dropped {n_missing:,} rows with missing/malformed values")
        if n_uncovered:
            print(f"  [WARNING] Dropped {n_uncovered:,} predictions in region×year pairs without reference")
        print(f"  [OK] Filtered predictions: {len(preds):,} rows, "
              f"{preds[SOURCE_KEY].drop_duplicates().shape[0]} prediction sources")

    return preds


# ============================================================================
# 4. EVENT MATCHING
# ============================================================================

def match_events(reference: pd.DataFrame,
                 predictions: pd.DataFrame,
                 tolerance: int = TOLERANCE,
                 verbose: bool = True) -> pd.DataFrame:
    """
    Pair every reference event with its nearest prediction per evaluation group.

    Each reference event is crossed with every evaluation group present in its
    Region and Year. Only the minimum-distance prediction is kept; ties go to
    the prediction with the lowest pred_id (filtered input order). Events with
    no prediction for a group are kept with null Date_pred/distance.

    A match is correct when distance <= tolerance. If one prediction is the
    correct nearest match of several reference events in its group, only the
    closest (then lowest ref_id) keeps it. The others take their nearest
    unclaimed prediction within tolerance if there is one, and otherwise keep
    their nearest prediction as an incorrect match. TP never exceeds P.

    Args:
        reference: Cleaned reference with Region
        predictions: Output of filter_predictions (needs pred_id)
        tolerance: Inclusive day threshold

    Returns:
        One row per (reference event, evaluation group) with columns
        ref_id, MOD_ID, Date_ref, GROUP_KEY, pred_id, Date_pred, distance, correct
    """
    ref = reference[['MOD_ID', 'Region', 'Year', 'Date_ref']].reset_index(drop=True)
    ref['ref_id'] = np.arange(len(ref))

    groups = predictions[GROUP_KEY].drop_duplicates()
    pairs = ref.merge(groups, on=['Region', 'Year'], how='inner')

    candidates = pairs.merge(
        predictions[['MOD_ID'] + GROUP_KEY + ['Date_pred', 'pred_id']],
        on=['MOD_ID'] + GROUP_KEY,
        how='left',
    )
    candidates['distance'] = (candidates['Date_ref'] - candidates['Date_pred']).abs()

    # Stable sort: nearest first, ties by pred_id, unmatched last
    candidates = candidates.sort_values(['ref_id', 'distance', 'pred_id'],
                                        kind='mergesort', na_position='last')
    n_candidates = len(candidates)
    pair_key = ['ref_id'] + SOURCE_KEY

    nearest = candidates.drop_duplicates(subset=pair_key, keep='first').copy()
    nearest['correct'] = nearest['distance'].le(tolerance)
    contenders = nearest

    # One prediction can only confirm one reference event. A pair that loses
    # its nearest prediction to a closer event falls back to its nearest
    # unclaimed prediction within tolerance, until no prediction is contested.
    settled = []
    claimed_ids = set()
    pool = candidates[candidates['distance'].le(tolerance)]
    n_reassigned = 0
    n_demoted = 0
    while True:
        in_tolerance = contenders[contenders['correct']].sort_values(['pred_id', 'distance', 'ref_id'],
                                                                    kind='mergesort')
        lost = in_tolerance.duplicated(subset=['pred_id'], keep='first')
        settled.append(contenders.drop(index=in_tolerance.index[lost]))
        claimed_ids.update(in_tolerance.loc[~lost, 'pred_id'].tolist())
        losers = in_tolerance[lost]
        if losers.empty:
            break

        pool = pool.merge(losers[pair_key], on=pair_key, how='inner')
        pool = pool[~pool['pred_id'].isin(claimed_ids)].sort_values(['ref_id', 'distance', 'pred_id'],
                                                               kind='mergesort')
        retry = pool.drop_duplicates(subset=pair_key, keep='first').copy()
        retry['correct'] = True

        # Pairs with nothing left keep their original nearest prediction
        stranded = losers[pair_key].merge(retry[pair_key], on=pair_key, how='left', indicator=True)
        stranded = stranded.loc[stranded['_merge'] == 'left_only', pair_key]
        demoted = nearest.merge(stranded, on=pair_key, how='inner')
        demoted['correct'] = False
        settled.append(demoted)

        n_reassigned += len(retry)
        n_demoted += len(demoted)
        contenders = retry

    matches = pd.concat(settled, ignore_index=True)
    matches['correct'] = matches['correct'].astype(bool)
    matches = matches.astype({'Date_pred': 'Int64', 'pred_id': 'Int64', 'distance': 'Int64'})
    matches = matches.sort_values(['ref_id'] + SOURCE_KEY, kind='mergesort').reset_index(drop=True)
    matches = matches[['ref_id', 'MOD_ID', 'Date_ref'] + GROUP_KEY +
                      ['pred_id', 'Date_pred', 'distance', 'correct']]

    if verbose:
        n_unmatched = int(matches['pred_id'].isna().sum())
        print("\nMatching reference events to predictions...")
        print(f"  Reference events: {len(ref):,} | Evaluation groups: {len(groups):,}")
        print(f"  Candidate pairs: {n_candidates:,} → nearest matches: {len(matches):,}")
        if n_unmatched:
            print(f"  Reference×group pairs without any prediction: {n_unmatched:,}")
        if n_reassigned:
            print(f"  {n_reassigned:,} matches moved to the next unclaimed prediction within tolerance")
        if n_demoted:
            print(f"  [WARNING] {n_demoted:,} matches reclassified: prediction already "
                  f"confirms a closer reference event")
        print(f"  [OK] Correct matches (tolerance {tolerance} days): {int(matches['correct'].sum()):,}")

    return matches


# ============================================================================
# 5. COUNT AGGREGATION
# ============================================================================

def count_events(reference: pd.DataFrame,
                 predictions: pd.DataFrame,
                 matches: pd.DataFrame,
                 verbose: bool = True) -> pd.DataFrame:
    """
    Tabulate T, TP, P, FP per (Group, Region, Year, Method, Data).

    The key grid is every prediction source crossed with every region×year
    of the reference, so combinations without predictions get zero counts.
    T depends on region×year only.
    """
    sources = predictions[SOURCE_KEY].drop_duplicates()
    region_years = reference[['Region', 'Year']].drop_duplicates()
    grid = sources.merge(region_years, how='cross')[GROUP_KEY]
    if grid.empty:
        if verbose:
            print("\n  [WARNING] No prediction sources left to count")
        return pd.DataFrame(columns=GROUP_KEY + COUNT_COLUMNS)

    t_counts = reference.groupby(['Region', 'Year']).size().rename('T').reset_index()
    p_counts = predictions.groupby(GROUP_KEY).size().rename('P').reset_index()
    tp_counts = matches[matches['correct']].groupby(GROUP_KEY).size().rename('TP').reset_index()

    counts = (grid
              .merge(t_counts, on=['Region', 'Year'], how='left', validate='m:1')
              .merge(p_counts, on=GROUP_KEY, how='left', validate='1:1')
              .merge(tp_counts, on=GROUP_KEY, how='left', validate='1:1'))

    for col in ['T', 'TP', 'P']:
        counts[col] = counts[col].fillna(0).astype(int)
    counts['FP'] = counts['P'] - counts['TP']

    counts = counts.sort_values(GROUP_KEY, kind='mergesort').reset_index(drop=True)

    if verbose:
        print("\nCounting events by", ', '.join(GROUP_KEY), "...")
        print(f"  [OK] {len(counts):,} keys ({len(sources)} sources × {len(region_years)} region-years)")

    return counts[GROUP_KEY + COUNT_COLUMNS]


def rollup_counts(counts: pd.DataFrame, verbose: bool = True) -> pd.DataFrame:
    """
    Append "All" rollups over Region and Year to per-region×year counts.

    Adds (Region=All, per Year), (Year=All, per Region) and a single
    (Region=All, Year=All) row per source. Every rollup is summed directly from
    the base rows, so the grand total is counted exactly once.
    """
    base = counts[GROUP_KEY + COUNT_COLUMNS].astype({'Region': object, 'Year': object})
    if base.empty:
        return base

    rollups = [base]
    for collapsed in [['Region'], ['Year'], ['Region', 'Year']]:
        keep = [c for c in GROUP_KEY if c not in collapsed]
        rolled = base.groupby(keep, as_index=False, sort=False)[COUNT_COLUMNS].sum()
        for col in collapsed:
            rolled[col] = ALL_LABEL
        rollups.append(rolled[GROUP_KEY + COUNT_COLUMNS])

    combined = pd.concat(rollups, ignore_index=True)

    if verbose:
        print(f"  [OK] Added {len(combined) - len(base):,} rollup rows ('{ALL_LABEL}' region/year)")

    return combined


# ============================================================================
# 6. METRICS
# ============================================================================

def compute_metrics(counts: pd.DataFrame) -> pd.DataFrame:
    """
    Derive Precision, Recall and F1 from count rows.

    - Recall = TP / T, NaN when T == 0 (no ground truth in scope)
    - Precision = TP / P, 0 when P == 0 (nothing predicted)
    - F1 = 2PR / (P + R), 0 when P + R == 0; NaN recall propagates
    """
    metrics = counts.copy()
    t = metrics['T'].astype(float)
    tp = metrics['TP'].astype(float)
    p = metrics['P'].astype(float)

    recall = tp / t.where(t > 0)
    precision = (tp / p.where(p > 0)).fillna(0.0)

    denominator = precision + recall
    f1 = 2 * precision * recall / denominator.where(denominator != 0)
    f1 = f1.mask(denominator == 0, 0.0)

    metrics['Precision'] = precision
    metrics['Recall'] = recall
    metrics['F1'] = f1
    return metrics


# ============================================================================
# 7. PIPELINE
# ============================================================================

def run_assessment(reference: pd.DataFrame,
                   results: pd.DataFrame,
                   config: Optional[Dict] = None,
                   region_map: Optional[pd.DataFrame] = None,
                   verbose: bool = True) -> Dict[str, pd.DataFrame]:
    """
    Run the full accuracy assessment on in-memory tables.

    Region for reference events comes from region_map when given, from a
    Region column already on the reference otherwise, and from the
    MOD_ID -> Region pairs of the results table as a last resort.

    Returns:
        Dict with 'reference', 'predictions', 'matches', 'counts', 'metrics'
    """
    config = validate_config(config if config is not None else DEFAULT_CONFIG)

    reference = clean_reference(reference,
                                valid_range=config['valid_mowing_range'],
                                min_difference=config['event_min_difference'],
                                verbose=verbose)

    if region_map is not None:
        reference = enrich_reference_with_region(reference, region_map, verbose=verbose)
    elif 'Region' not in reference.columns:
        reference = enrich_reference_with_region(reference, derive_region_map(results),
                                                 strict=False, verbose=verbose)
    else:
        reference = reference.dropna(subset=['Region']).reset_index(drop=True)

    predictions = filter_predictions(results, reference,
                                     valid_range=config['valid_mowing_range'],
                                     verbose=verbose)

    matches = match_events(reference, predictions, tolerance=config['tolerance'], verbose=verbose)

    counts = count_events(reference, predictions, matches, verbose=verbose)
    counts = rollup_counts(counts, verbose=verbose)
    metrics = compute_metrics(counts)

    return {
        'reference': reference,
        'predictions': predictions,
        'matches': matches,
        'counts': counts,
        'metrics': metrics,
    }


def select_metrics(metrics: pd.DataFrame,
                   region=ALL_LABEL,
                   year=ALL_LABEL,
                   sources: Optional[List[Tuple[str, str, str]]] = None) -> pd.DataFrame:
    """Metric rows for one Region/Year scope (use ALL_LABEL for rollups)."""
    rows = metrics[(metrics['Region'] == region) & (metrics['Year'] == year)]
    if sources is not None:
        wanted = pd.DataFrame(sources, columns=SOURCE_KEY)
        rows = rows.merge(wanted, on=SOURCE_KEY, how='inner')
    return rows.reset_index(drop=True)
