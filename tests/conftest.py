import io

import pandas as pd
import pytest

from app import create_app
from database import close_pool, connect, create_tables
from schema_registry import SchemaRegistry
from student_store import StudentStore


def make_xlsx(rows, columns=None):
    """Build an .xlsx payload from a list of row dicts."""
    df = pd.DataFrame(rows, columns=columns)
    buffer = io.BytesIO()
    df.to_excel(buffer, index=False, engine='openpyxl')
    return buffer.getvalue()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / 'students.db')


@pytest.fixture
def conn(db_path):
    """A raw connection with the schema in place."""
    conn = connect(db_path)
    create_tables(conn)
    yield conn
    conn.close()


@pytest.fixture
def registry(conn):
    return SchemaRegistry(conn)


@pytest.fixture
def store(conn, registry):
    return StudentStore(conn, registry)


@pytest.fixture
def app(db_path):
    app = create_app({
        'TESTING': True,
        'DATABASE': db_path,
        'DB_POOL_SIZE': 2,
        'DB_POOL_TIMEOUT': 0.1,
        'DB_CONNECT_RETRIES': 1,
        'DB_CONNECT_BACKOFF': 0,
    })
    yield app
    close_pool(app)


@pytest.fixture
def client(app):
    return app.test_client()
