import pandas as pd
import pytest


def _reference_frame(rows, with_region=False):
    columns = ['MOD_ID', 'Year', 'Date_ref'] + (['Region'] if with_region else [])
    return pd.DataFrame(rows, columns=columns)


def _results_frame(rows):
    return pd.DataFrame(rows, columns=['Region', 'Year', 'MOD_ID', 'Group', 'Method', 'Data', 'Date_pred'])


@pytest.fixture
def make_reference():
    return _reference_frame


@pytest.fixture
def make_results():
    return _results_frame


@pytest.fixture
def config():
    return {
        'tolerance': 12,
        'valid_mowing_range': (91, 304),
        'event_min_difference': 15,
    }
