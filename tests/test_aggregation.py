import datetime as dt

import pytest

import tick_dashboard as td
from conftest import make_task


def _timed(task_id, project, start, end, **kw):
    return make_task(id=task_id, project_name=project, start_date=start, due_date=end, **kw)


@pytest.mark.parametrize('hours,expected', [
    (None, '—'),
    (0, '0m'),
    (0.75, '45m'),
    (1.5, '1h30m'),
    (2, '2h'),
    (2.25, '2h15m'),
    (25.5, '25h30m'),
])
def test_format_duration(hours, expected):
    assert td.format_duration(hours) == expected


def test_duration_rounds_to_whole_minutes():
    start = dt.datetime(2024, 3, 5, 9, 0, 0)
    assert td.duration_hours(start, start + dt.timedelta(minutes=44, seconds=31)) == 0.75
    assert td.duration_hours(start, None) is None


def test_two_tasks_sum_to_expected_project_total(resolver):
    a = _timed('a', 'Work', dt.datetime(2024, 3, 5, 9), dt.datetime(2024, 3, 5, 10, 30))
    b = _timed('b', 'Work', dt.datetime(2024, 3, 5, 14), dt.datetime(2024, 3, 5, 14, 45))
    assert td.format_duration(td.duration_hours(a.start_date, a.due_date)) == '1h30m'
    assert td.format_duration(td.duration_hours(b.start_date, b.due_date)) == '45m'
    projects = td.aggregate_projects([a, b], resolver)
    assert td.format_duration(projects['Work'].hours) == '2h15m'
    assert projects['Work'].color == '#3b82f6'
    assert projects['Work'].folder == 'Work affairs'


def test_tasks_without_positive_duration_are_ignored(resolver):
    t = dt.datetime(2024, 3, 5, 9)
    tasks = [
        _timed('all-day', 'Work', t, t + dt.timedelta(days=1), is_all_day=True),
        _timed('zero', 'Work', t, t),
        _timed('negative', 'Work', t, t - dt.timedelta(hours=1)),
        make_task(id='start-only', project_name='Work', start_date=t),
    ]
    assert not any(td.has_duration(task) for task in tasks)
    assert td.aggregate_projects(tasks, resolver) == {}


def test_folder_rollup_and_independent_lists(resolver):
    day = dt.datetime(2024, 3, 5)
    tasks = [
        _timed('a', 'Literature', day.replace(hour=9), day.replace(hour=10)),
        _timed('b', 'Experiments', day.replace(hour=11), day.replace(hour=13)),
        _timed('c', '🏃 Health', day.replace(hour=18), day.replace(hour=18, minute=30)),
    ]
    folders = td.aggregate_folders(tasks, resolver)
    assert list(folders) == ['Research', '🏃 Health']
    assert folders['Research'].hours == 3.0
    assert folders['Research'].color == '#dc2626'
    # Independent list keeps its own color
    assert folders['🏃 Health'].color == '#eab308'


def test_folder_without_configured_color_uses_project_color_of_same_name():
    resolver = td.CategoryResolver(folders={'Notes': 'Archive'}, project_colors={'Archive': '#111111'},
                                   folder_colors={})
    task = _timed('a', 'Notes', dt.datetime(2024, 3, 5, 9), dt.datetime(2024, 3, 5, 10))
    assert td.aggregate_folders([task], resolver)['Archive'].color == '#111111'


def test_bucket_matrix_uses_due_date_buckets(resolver):
    tasks = [
        _timed('a', 'Work', dt.datetime(2024, 3, 5, 9), dt.datetime(2024, 3, 5, 10, 30)),
        _timed('b', 'Work', dt.datetime(2024, 3, 5, 10), dt.datetime(2024, 3, 5, 10, 45)),
        _timed('c', 'Reading', dt.datetime(2024, 3, 5, 21), dt.datetime(2024, 3, 5, 22)),
    ]
    labels = td.bucket_labels('day', *td.range_for('day', dt.date(2024, 3, 5)))
    matrix = td.bucket_matrix(tasks, 'day', labels)
    assert list(matrix) == ['Work', 'Reading']
    assert matrix['Work'][10] == 2.25
    assert sum(matrix['Work']) == 2.25
    assert matrix['Reading'][22] == 1.0


def test_sort_for_table_puts_completed_last():
    tasks = [
        make_task(id='done', start_date=dt.datetime(2024, 3, 1), status=td.STATUS_COMPLETED),
        make_task(id='late', start_date=dt.datetime(2024, 3, 9)),
        make_task(id='undated'),
        make_task(id='due-only', due_date=dt.datetime(2024, 3, 2)),
    ]
    assert [t.id for t in td.sort_for_table(tasks)] == ['undated', 'due-only', 'late', 'done']


def test_apply_filters_builds_view(resolver):
    tasks = [
        _timed('a', 'Literature', dt.datetime(2024, 3, 5, 9), dt.datetime(2024, 3, 5, 10), tags=['x']),
        _timed('b', 'Work', dt.datetime(2024, 3, 12, 9), dt.datetime(2024, 3, 12, 11)),
    ]
    view = td.apply_filters(tasks, td.FilterState(period='week', cursor=dt.date(2024, 3, 5)), resolver)
    assert view.label == '2024-03-04 ~ 2024-03-10'
    assert [t.id for t in view.filtered_tasks] == ['a']
    assert list(view.project_aggregates) == ['Literature']
    assert view.bucket_matrix['Literature'][1] == 1.0

    payload = view.as_dict()
    assert payload['range'] == {'start': '2024-03-04T00:00:00', 'end': '2024-03-10T23:59:59'}
    assert payload['projects'][0]['duration'] == '1h'
    assert payload['buckets']['series'][0]['color'] == '#22c55e'
    assert payload['tasks'][0]['startDate'] == '2024-03-05T09:00:00'


def test_api_list_color_used_when_list_not_configured(resolver):
    t = _timed('a', 'Side project', dt.datetime(2024, 3, 5, 9), dt.datetime(2024, 3, 5, 10),
               project_color='#123456', source='api')
    assert td.aggregate_projects([t], resolver)['Side project'].color == '#123456'
    assert td.aggregate_folders([t], resolver)['Side project'].color == '#123456'
    # Configured colors still win
    work = _timed('b', 'Work', dt.datetime(2024, 3, 5, 9), dt.datetime(2024, 3, 5, 10), project_color='#123456')
    assert td.aggregate_projects([work], resolver)['Work'].color == '#3b82f6'
    assert resolver.resolve_project_color('Side project') == td.NEUTRAL_COLOR
