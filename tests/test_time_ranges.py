import datetime as dt

import pytest

import tick_dashboard as td


def test_day_range_covers_whole_day():
    start, end = td.range_for('day', dt.date(2024, 3, 5))
    assert start == dt.datetime(2024, 3, 5, 0, 0)
    assert end.date() == dt.date(2024, 3, 5)
    assert end.time() == dt.time.max


def test_week_runs_monday_to_sunday():
    # 2024-03-07 is a Thursday
    start, end = td.range_for('week', dt.date(2024, 3, 7))
    assert start.date() == dt.date(2024, 3, 4)
    assert end.date() == dt.date(2024, 3, 10)
    sunday_start, _ = td.range_for('week', dt.date(2024, 3, 10))
    assert sunday_start.date() == dt.date(2024, 3, 4)


@pytest.mark.parametrize('cursor,first,last', [
    (dt.date(2024, 2, 14), dt.date(2024, 2, 1), dt.date(2024, 2, 29)),
    (dt.date(2023, 2, 14), dt.date(2023, 2, 1), dt.date(2023, 2, 28)),
    (dt.date(2024, 12, 31), dt.date(2024, 12, 1), dt.date(2024, 12, 31)),
])
def test_month_range(cursor, first, last):
    start, end = td.range_for('month', cursor)
    assert (start.date(), end.date()) == (first, last)


@pytest.mark.parametrize('cursor,first,last', [
    (dt.date(2024, 1, 1), dt.date(2024, 1, 1), dt.date(2024, 3, 31)),
    (dt.date(2024, 5, 20), dt.date(2024, 4, 1), dt.date(2024, 6, 30)),
    (dt.date(2024, 12, 31), dt.date(2024, 10, 1), dt.date(2024, 12, 31)),
])
def test_quarter_range(cursor, first, last):
    start, end = td.range_for('quarter', cursor)
    assert (start.date(), end.date()) == (first, last)


def test_year_range_accepts_datetime_cursor():
    start, end = td.range_for('year', dt.datetime(2024, 7, 1, 12, 30))
    assert (start.date(), end.date()) == (dt.date(2024, 1, 1), dt.date(2024, 12, 31))


def test_unknown_period_is_rejected():
    with pytest.raises(ValueError):
        td.range_for('fortnight', dt.date(2024, 1, 1))


@pytest.mark.parametrize('period,expected', [
    ('day', '2024-03-07'),
    ('week', '2024-03-04 ~ 2024-03-10'),
    ('month', '2024-03'),
    ('quarter', '2024 Q1'),
    ('year', '2024'),
])
def test_period_labels(period, expected):
    assert td.period_label(period, dt.date(2024, 3, 7)) == expected


def test_month_navigation_from_jan_31_lands_in_february():
    assert td.navigate('month', dt.date(2024, 1, 31), 1) == dt.date(2024, 2, 29)
    assert td.navigate('month', dt.date(2023, 1, 31), 1) == dt.date(2023, 2, 28)


@pytest.mark.parametrize('period,direction,expected', [
    ('day', 1, dt.date(2024, 3, 8)),
    ('day', -1, dt.date(2024, 3, 6)),
    ('week', 1, dt.date(2024, 3, 14)),
    ('month', -3, dt.date(2023, 12, 7)),
    ('quarter', 1, dt.date(2024, 6, 7)),
    ('year', -1, dt.date(2023, 3, 7)),
])
def test_navigation_steps(period, direction, expected):
    assert td.navigate(period, dt.date(2024, 3, 7), direction) == expected


def test_leap_day_year_navigation_clamps():
    assert td.navigate('year', dt.date(2024, 2, 29), 1) == dt.date(2025, 2, 28)


def test_bucket_labels_per_period():
    day = td.bucket_labels('day', *td.range_for('day', dt.date(2024, 3, 7)))
    assert len(day) == 24 and day[0] == '00:00' and day[-1] == '23:00'

    week = td.bucket_labels('week', *td.range_for('week', dt.date(2024, 3, 7)))
    assert week == ['3/4', '3/5', '3/6', '3/7', '3/8', '3/9', '3/10']

    month = td.bucket_labels('month', *td.range_for('month', dt.date(2024, 2, 7)))
    assert month[0] == '1' and month[-1] == '29' and len(month) == 29

    quarter = td.bucket_labels('quarter', *td.range_for('quarter', dt.date(2024, 2, 7)))
    assert quarter[:3] == ['1/1', '1/8', '1/15']
    assert len(quarter) == 13

    year = td.bucket_labels('year', *td.range_for('year', dt.date(2024, 2, 7)))
    assert year[0] == 'Jan' and year[-1] == 'Dec'


def test_quarter_bucket_snaps_to_week_step():
    assert td.bucket_for('quarter', dt.datetime(2024, 1, 10, 9, 0)) == '1/8'
    assert td.bucket_for('quarter', dt.datetime(2024, 3, 31, 23, 0)) == '3/25'


@pytest.mark.parametrize('period', td.PERIODS)
def test_bucket_for_is_always_a_bucket_label(period):
    moment = dt.datetime(2024, 1, 1, 0, 0)
    while moment.year == 2024:
        labels = td.bucket_labels(period, *td.range_for(period, moment))
        assert td.bucket_for(period, moment) in labels
        moment += dt.timedelta(hours=13, minutes=7)
