import pytest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock
import sys
from pathlib import Path

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from lib.local_storage import LocalStorage

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)

class FakeResult:
    def __init__(self, data):
        self.data = data
        self.error = None

class FakeQuery:
    def __init__(self, table, op, payload=None):
        self.table = table
        self.op = op
        self.payload = payload
        self.filters = []
        self.order_by = None

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def execute(self):
        return self.table.run(self)

class FakeTable:
    """Just enough of the postgrest query builder for the services."""

    def __init__(self, name, db):
        self.name = name
        self.db = db
        self.rows = []

    def select(self, *columns):
        return FakeQuery(self, 'select')

    def insert(self, data):
        return FakeQuery(self, 'insert', data)

    def update(self, data):
        return FakeQuery(self, 'update', data)

    def _matches(self, row, filters):
        return all(row.get(column) == value for column, value in filters)

    def run(self, query):
        if (self.name, query.op) in self.db.failures:
            raise Exception(self.db.failures[(self.name, query.op)])
        if query.op != 'select':
            self.db.writes.append((self.name, query.op, dict(query.payload)))

        if query.op == 'insert':
            row = dict(query.payload)
            if self.name == 'reports' and 'timestamp' not in row:
                self.db.clock_ticks += 1
                row['timestamp'] = (BASE_TIME + timedelta(seconds=self.db.clock_ticks)).isoformat()
            self.rows.append(row)
            return FakeResult([dict(row)])

        if query.op == 'update':
            updated = []
            for row in self.rows:
                if self._matches(row, query.filters):
                    row.update(query.payload)
                    updated.append(dict(row))
            return FakeResult(updated)

        rows = [dict(row) for row in self.rows if self._matches(row, query.filters)]
        if query.order_by:
            column, desc = query.order_by
            rows.sort(key=lambda row: row[column], reverse=desc)
        return FakeResult(rows)

class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.failures = {}
        self.writes = []
        self.clock_ticks = 0
        self.auth = MagicMock()

    def table(self, name):
        if name not in self.tables:
            self.tables[name] = FakeTable(name, self)
        return self.tables[name]

    def fail(self, table, op, message='connection refused'):
        self.failures[(table, op)] = message

    def writes_to(self, table, op=None):
        return [w for w in self.writes if w[0] == table and (op is None or w[1] == op)]

def make_auth_user(uid='user-1', email='sam@example.com', display_name=None, photo_url=None, provider='email'):
    metadata = {}
    if display_name:
        metadata['display_name'] = display_name
    if photo_url:
        metadata['avatar_url'] = photo_url
    return SimpleNamespace(
        id=uid,
        email=email,
        user_metadata=metadata,
        app_metadata={'provider': provider},
    )

def make_auth_response(user, access_token='access-1', refresh_token='refresh-1'):
    session = SimpleNamespace(access_token=access_token, refresh_token=refresh_token)
    return SimpleNamespace(user=user, session=session)

@pytest.fixture
def fake_supabase():
    return FakeSupabase()

@pytest.fixture
def storage_path(tmp_path):
    return tmp_path / 'local_storage.db'

@pytest.fixture
def local_storage(storage_path):
    return LocalStorage(storage_path, 'browser-1')
