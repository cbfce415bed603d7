import datetime as dt

import tick_dashboard as td
from conftest import make_task


def _text(frags):
    return ''.join(text for _, text in frags)


def _view(tasks, resolver, period='day', cursor=dt.date(2024, 3, 5)):
    return td.apply_filters(tasks, td.FilterState(period=period, cursor=cursor), resolver)


def _sample(resolver):
    return [
        make_task(id='a', title='Draft intro', project_name='Literature', tags=['thesis'],
                  start_date=dt.datetime(2024, 3, 5, 9), due_date=dt.datetime(2024, 3, 5, 10, 30)),
        make_task(id='b', title='Gym', project_name='Health',
                  start_date=dt.datetime(2024, 3, 5, 14), due_date=dt.datetime(2024, 3, 5, 14, 45)),
        make_task(id='c', title='Filed', project_name='Work', status=td.STATUS_COMPLETED,
                  start_date=dt.datetime(2024, 3, 5, 8), completed_time=dt.datetime(2024, 3, 5, 8, 30)),
    ]


def test_truncate_and_pad_respect_wide_glyphs():
    assert td._display_width('论文') == 4
    assert td._truncate('文献综述写作', 7) == '文献综…'
    assert td._display_width(td._pad_display('文献', 6)) == 6
    assert td._pad_display('ab', 4, 'right') == '  ab'


def test_header_fragments(resolver):
    view = _view(_sample(resolver), resolver)
    text = _text(td.build_header_fragments(view, 'Fetched 3 tasks'))
    assert 'DAY' in text and '2024-03-05' in text and '3 tasks' in text
    assert 'Fetched 3 tasks' in text


def test_table_rows_sorted_and_formatted(resolver):
    view = _view(_sample(resolver), resolver)
    text = _text(td.build_table_fragments(view.filtered_tasks, resolver))
    lines = text.splitlines()
    assert lines[0].startswith('Title')
    assert 'Draft intro' in lines[1] and '1h30m' in lines[1] and '03-05 09:00' in lines[1]
    assert 'Gym' in lines[2] and '45m' in lines[2]
    assert 'Filed' in lines[3] and 'done 03-05 08:30' in lines[3]


def test_table_uses_list_color(resolver):
    view = _view(_sample(resolver), resolver)
    frags = td.build_table_fragments(view.filtered_tasks, resolver)
    assert ('fg:#22c55e', td._pad_display('Literature', 14)) in frags


def test_table_paging_reports_hidden_rows(resolver):
    tasks = [make_task(id=str(i), start_date=dt.datetime(2024, 3, 5, 9, i)) for i in range(5)]
    text = _text(td.build_table_fragments(tasks, resolver, offset=1, limit=2))
    assert '2 more' in text


def test_empty_table(resolver):
    assert _text(td.build_table_fragments([], resolver)) == 'No tasks in this period.'


def test_filter_bar_needs_two_lists(resolver):
    state = td.FilterState(period='day', cursor=dt.date(2024, 3, 5))
    single = [td.ProjectGroup(folder='Health', projects=['Health'])]
    assert 'Lists:' not in _text(td.build_filter_fragments(single, [], state, resolver))

    tasks = _sample(resolver)
    groups = td.project_groups(tasks, state, resolver)
    tags = td.tag_counts(tasks, state)
    selected = state.toggle_project('Health')
    frags = td.build_filter_fragments(groups, tags, selected, resolver, project_focus=0)
    text = _text(frags)
    assert 'Lists:' in text and '[Literature]' in text and '#thesis 1' in text
    assert ('bg:#eab308 fg:#ffffff bold', '[Health]') in frags


def test_real_folder_chip_is_shown(resolver):
    state = td.FilterState(period='day', cursor=dt.date(2024, 3, 5))
    groups = [td.ProjectGroup(folder='Research', projects=['Literature', 'Experiments'])]
    text = _text(td.build_filter_fragments(groups, [], state, resolver))
    assert '[Research]' in text


def test_breakdown_lists_largest_first(resolver):
    view = _view(_sample(resolver), resolver)
    text = _text(td.build_breakdown_fragments('By list', view.project_aggregates))
    assert text.index('Literature') < text.index('Health')
    assert '1h30m' in text and '67%' in text


def test_breakdown_without_timed_tasks(resolver):
    assert 'no timed tasks' in _text(td.build_breakdown_fragments('By list', {}))


def test_bucket_fragments_skip_empty_buckets(resolver):
    view = _view(_sample(resolver), resolver)
    text = _text(td.build_bucket_fragments(view))
    assert '10:00' in text and '14:00' in text
    assert '03:00' not in text


def test_api_list_color_reaches_table_and_chips(resolver):
    task = make_task(id='a', title='Ship it', project_name='Side project', project_color='#123456', source='api',
                     start_date=dt.datetime(2024, 3, 5, 9), due_date=dt.datetime(2024, 3, 5, 10))
    other = make_task(id='b', title='Gym', project_name='Health', start_date=dt.datetime(2024, 3, 5, 14))
    frags = td.build_table_fragments([task], resolver)
    assert ('fg:#123456', td._pad_display('Side project', 14)) in frags

    state = td.FilterState(period='day', cursor=dt.date(2024, 3, 5))
    groups = td.project_groups([task, other], state, resolver)
    assert groups[0].colors == {'Side project': '#123456'}
    chips = td.build_filter_fragments(groups, [], state, resolver)
    assert ('fg:#123456', '[Side project]') in chips
