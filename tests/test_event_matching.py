"""Tests for nearest-event matching."""
import pandas as pd
import pytest

from mowing_accuracy_functions import filter_predictions, match_events


@pytest.fixture
def match(make_reference, make_results):
    def _match(reference_rows, result_rows, tolerance=12):
        reference = make_reference(reference_rows, with_region=True)
        preds = filter_predictions(make_results(result_rows), reference, valid_range=(91, 304), verbose=False)
        return match_events(reference, preds, tolerance=tolerance, verbose=False)
    return _match


def test_only_nearest_prediction_is_kept(match):
    matches = match(
        [('A', 2020, 100, 'R1')],
        [
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 120),
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 103),
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 107),
        ],
    )

    assert len(matches) == 1
    assert matches.loc[0, 'distance'] == 3
    assert matches.loc[0, 'Date_pred'] == 103
    assert bool(matches.loc[0, 'correct']) is True


def test_tolerance_boundary_is_inclusive(match):
    at_boundary = match([('A', 2020, 100, 'R1')], [('R1', 2020, 'A', 'X', 'm1', 'S1', 112)], tolerance=12)
    past_boundary = match([('A', 2020, 100, 'R1')], [('R1', 2020, 'A', 'X', 'm1', 'S1', 113)], tolerance=12)

    assert bool(at_boundary.loc[0, 'correct']) is True
    assert bool(past_boundary.loc[0, 'correct']) is False
    assert past_boundary.loc[0, 'distance'] == 13


def test_ties_keep_first_prediction_in_input_order(match):
    matches = match(
        [('A', 2020, 100, 'R1')],
        [
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 105),
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 95),
        ],
    )

    assert len(matches) == 1
    assert matches.loc[0, 'Date_pred'] == 105
    assert matches.loc[0, 'pred_id'] == 0


def test_reference_without_prediction_in_group_is_kept_unmatched(match):
    matches = match(
        [('A', 2020, 100, 'R1'), ('B', 2020, 150, 'R1')],
        [('R1', 2020, 'A', 'X', 'm1', 'S1', 101)],
    )

    unmatched = matches[matches['MOD_ID'] == 'B'].iloc[0]
    assert pd.isna(unmatched['Date_pred'])
    assert pd.isna(unmatched['distance'])
    assert bool(unmatched['correct']) is False
    assert len(matches) == 2


def test_groups_are_matched_independently(match):
    matches = match(
        [('A', 2020, 100, 'R1')],
        [
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 102),
            ('R1', 2020, 'A', 'Y', 'm1', 'S1', 98),
            ('R1', 2020, 'A', 'X', 'm2', 'S1', 130),
        ],
    )

    assert len(matches) == 3
    by_source = matches.set_index(['Group', 'Method'])['correct'].to_dict()
    assert by_source == {('X', 'm1'): True, ('X', 'm2'): False, ('Y', 'm1'): True}


def test_one_prediction_confirms_at_most_one_reference_event(match):
    matches = match(
        [('A', 2020, 100, 'R1'), ('A', 2020, 118, 'R1')],
        [('R1', 2020, 'A', 'X', 'm1', 'S1', 110)],
    )

    assert len(matches) == 2
    assert matches['pred_id'].tolist() == [0, 0]
    # 118 is closer to 110 than 100 is
    assert matches['correct'].tolist() == [False, True]


def test_region_year_without_predictions_produces_no_pairs(match):
    matches = match(
        [('A', 2020, 100, 'R1'), ('C', 2020, 100, 'R2')],
        [('R1', 2020, 'A', 'X', 'm1', 'S1', 100)],
    )

    assert matches['MOD_ID'].tolist() == ['A']


def test_event_losing_nearest_prediction_takes_next_one_in_tolerance(match):
    # Both events are nearest to 106; 112 falls back to 120, still within 12 days
    matches = match(
        [('A', 2020, 100, 'R1'), ('A', 2020, 112, 'R1')],
        [
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 106),
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 120),
        ],
    )

    assert matches['pred_id'].tolist() == [0, 1]
    assert matches['Date_pred'].tolist() == [106, 120]
    assert matches['correct'].tolist() == [True, True]


def test_fallback_skips_prediction_claimed_by_another_event(match):
    # 104 ties with 100 on 102 and loses; 108 belongs to 110, so 104 takes 116
    matches = match(
        [('A', 2020, 100, 'R1'), ('A', 2020, 104, 'R1'), ('A', 2020, 110, 'R1')],
        [
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 102),
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 108),
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 116),
        ],
    )

    assert matches['pred_id'].tolist() == [0, 2, 1]
    assert matches['distance'].tolist() == [2, 12, 2]
    assert matches['correct'].all()


def test_event_without_free_prediction_keeps_its_nearest_as_incorrect(match):
    # 118 loses 110 to 108 and 128 is already taken by 140
    matches = match(
        [('A', 2020, 108, 'R1'), ('A', 2020, 118, 'R1'), ('A', 2020, 140, 'R1')],
        [
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 110),
            ('R1', 2020, 'A', 'X', 'm1', 'S1', 128),
        ],
    )

    assert matches['Date_pred'].tolist() == [110, 110, 128]
    assert matches['correct'].tolist() == [True, False, True]
