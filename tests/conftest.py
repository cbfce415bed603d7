import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import tick_dashboard as td  # noqa: E402


CSV_HEADER = ("Title,List Name,Folder Name,Tags,Start Date,Due Date,Priority,Status,"
              "Completed Time,Is All Day,taskId")


def make_task(**overrides) -> td.Task:
    base = {
        'id': 'task-1',
        'title': 'Read chapter 3',
        'project_name': 'Reading',
        'folder_name': 'Self-improvement',
        'tags': [],
        'start_date': None,
        'due_date': None,
        'completed_time': None,
    }
    base.update(overrides)
    return td.Task(**base)


@pytest.fixture
def resolver():
    return td.CategoryResolver()


@pytest.fixture
def sample_csv_text():
    """A TickTick backup with the two metadata lines it writes above the header."""
    return "\n".join([
        '"Date: 2024-03-05+0000"',
        '"Version: 7.1"',
        CSV_HEADER,
        'Draft intro,Literature,Research,"thesis,writing",2024-03-05T09:00:00,2024-03-05T10:30:00,3,0,,false,t1',
        'Gym,Health,,,2024-03-05T14:00:00,2024-03-05T14:45:00,0,0,,false,t2',
        '"Review ""notes"", then\nfile",Work,Work affairs,admin,2024-03-06T08:00:00,,5,2,2024-03-06T09:00:00,false,t3',
        'Holiday,Leisure,,,2024-03-07T00:00:00,2024-03-08T00:00:00,0,0,,true,t4',
    ]) + "\n"


@pytest.fixture
def temp_db_path(tmp_path):
    """Return a unique SQLite path per test to avoid cross-test contamination."""
    return tmp_path / "test_tasks.db"


@pytest.fixture
def token_store(tmp_path):
    return td.TokenStore(str(tmp_path / "token.json"))
