import logging
import queue
import sqlite3
import time
from contextlib import contextmanager

from flask import current_app, g

from errors import UnavailableError

logger = logging.getLogger(__name__)


def _casefold(value):
    if value is None:
        return None
    return str(value).casefold()


def connect(database):
    """Open a connection configured the way every request expects it."""
    conn = sqlite3.connect(database, check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.create_function('casefold', 1, _casefold, deterministic=True)
    if database != ':memory:':
        conn.execute('PRAGMA journal_mode=WAL')
    return conn


def connect_with_retry(database, retries=5, backoff=2.0):
    """
    Connect and run a trivial query, retrying a fixed number of times.
    The last error is re-raised once the attempts are used up.
    """
    attempts = max(1, retries)
    for attempt in range(1, attempts + 1):
        try:
            conn = connect(database)
            conn.execute('SELECT 1')
            return conn
        except sqlite3.Error as e:
            if attempt == attempts:
                logger.error(f"Database connection failed after {attempts} attempts: {str(e)}")
                raise
            logger.warning(f"Database connection attempt {attempt}/{attempts} failed: {str(e)}; "
                           f"retrying in {backoff}s")
            time.sleep(backoff)


class ConnectionPool:
    def __init__(self, database: str, size: int = 5, timeout: float = 5.0,
                 retries: int = 1, backoff: float = 0.0):
        self.logger = logging.getLogger(__name__)
        self.database = database
        self.size = size
        self.timeout = timeout
        self._idle = queue.LifoQueue(maxsize=size)
        self._connections = []
        self._closed = False

        try:
            for _ in range(size):
                conn = connect_with_retry(database, retries, backoff)
                self._connections.append(conn)
                self._idle.put_nowait(conn)
        except sqlite3.Error:
            for conn in self._connections:
                conn.close()
            raise

        self.logger.info(f"Opened {size} connections to {database}")

    def acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise UnavailableError('Database pool is closed')
        try:
            return self._idle.get(timeout=self.timeout)
        except queue.Empty:
            self.logger.warning(f"No free database connection after {self.timeout}s "
                                f"({self.size} in use)")
            raise UnavailableError('Database is busy, please retry')

    def release(self, conn: sqlite3.Connection):
        if self._closed:
            conn.close()
            return
        # Never hand a half-finished transaction to the next request
        if conn.in_transaction:
            conn.rollback()
        self._idle.put_nowait(conn)

    @contextmanager
    def connection(self):
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def close(self):
        """Wait for borrowed connections to come back, then close everything."""
        self._closed = True
        for _ in range(len(self._connections)):
            try:
                self._idle.get(timeout=self.timeout).close()
            except queue.Empty:
                self.logger.warning('Closing pool with connections still in use')
                break
        for conn in self._connections:
            conn.close()
        self.logger.info(f"Closed database pool for {self.database}")


def create_tables(conn):
    """Create the three tables if they don't exist"""
    # Students table, dynamic columns get appended with ALTER TABLE
    conn.execute("""
        CREATE TABLE IF NOT EXISTS students (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            student_id TEXT NOT NULL UNIQUE,
            name TEXT,
            class TEXT,
            section TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Registry of the dynamic columns
    conn.execute("""
        CREATE TABLE IF NOT EXISTS table_columns (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            column_name TEXT NOT NULL UNIQUE COLLATE NOCASE,
            data_type TEXT DEFAULT 'TEXT',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS work_status (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'started', 'completed')),
            start_date DATE,
            deadline DATE NOT NULL,
            completed_date DATE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    conn.commit()


def query_db(conn, query, args=(), one=False):
    """Execute a query and return results"""
    cur = conn.execute(query, args)
    rv = cur.fetchall()
    cur.close()
    return (rv[0] if rv else None) if one else rv


def quote_identifier(name):
    return '"' + name.replace('"', '""') + '"'


# Flask integration

def init_db(app):
    """Open the pool (retrying on startup), check it works and create the schema."""
    pool = ConnectionPool(
        app.config['DATABASE'],
        size=app.config['DB_POOL_SIZE'],
        timeout=app.config['DB_POOL_TIMEOUT'],
        retries=app.config['DB_CONNECT_RETRIES'],
        backoff=app.config['DB_CONNECT_BACKOFF'],
    )
    with pool.connection() as conn:
        create_tables(conn)
    app.extensions['db_pool'] = pool
    app.teardown_appcontext(close_db)
    return pool


def close_pool(app):
    pool = app.extensions.pop('db_pool', None)
    if pool is not None:
        pool.close()


def get_db():
    """Borrow a connection for the current request"""
    if 'db' not in g:
        g.db = current_app.extensions['db_pool'].acquire()
    return g.db


def close_db(e=None):
    """Give the request's connection back to the pool"""
    db = g.pop('db', None)
    if db is not None:
        current_app.extensions['db_pool'].release(db)
