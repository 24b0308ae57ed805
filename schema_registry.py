import logging
import sqlite3
from typing import List, Optional

from database import query_db, quote_identifier
from errors import ConflictError, NotFoundError, ValidationError
from models import BASE_COLUMNS, ColumnDefinition

DEFAULT_DATA_TYPE = 'TEXT'
MAX_COLUMN_NAME_LENGTH = 100


class SchemaRegistry:
    """
    Keeps track of the optional student columns.

    The table_columns registry and the live students table are changed
    together in one transaction, so a failed ALTER never leaves a
    registered name without its column.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.logger = logging.getLogger(__name__)

    def list_definitions(self) -> List[ColumnDefinition]:
        rows = query_db(self.conn,
                        "SELECT column_name, data_type, created_at FROM table_columns ORDER BY id")
        return [ColumnDefinition(name=r['column_name'], data_type=r['data_type'],
                                 created_at=r['created_at']) for r in rows]

    def list_columns(self) -> List[str]:
        """Base columns first, then dynamic ones in the order they were added."""
        return BASE_COLUMNS + [d.name for d in self.list_definitions()]

    def live_columns(self) -> List[str]:
        return [r['name'] for r in query_db(self.conn, "PRAGMA table_info(students)")]

    def get_definition(self, name: str) -> Optional[ColumnDefinition]:
        row = query_db(self.conn,
                       "SELECT column_name, data_type, created_at FROM table_columns WHERE column_name = ?",
                       [name], one=True)
        if row is None:
            return None
        return ColumnDefinition(name=row['column_name'], data_type=row['data_type'],
                                created_at=row['created_at'])

    def resolve(self, name: str) -> Optional[str]:
        """Return the stored spelling of a valid attribute name, or None."""
        lookup = {c.lower(): c for c in self.list_columns()}
        return lookup.get(str(name).strip().lower())

    def add_column(self, name: str) -> ColumnDefinition:
        name = self._clean_name(name)
        lowered = name.lower()

        if lowered in [c.lower() for c in BASE_COLUMNS] or self.get_definition(name) is not None:
            raise ConflictError('Column already exists')
        # Columns the registry doesn't know about (id, created_at, manual ALTERs)
        if lowered in [c.lower() for c in self.live_columns()]:
            raise ConflictError(f"Column '{name}' already exists on the students table")

        try:
            with self.conn:
                self.conn.execute(
                    "INSERT INTO table_columns (column_name, data_type) VALUES (?, ?)",
                    (name, DEFAULT_DATA_TYPE)
                )
                self.conn.execute(
                    f"ALTER TABLE students ADD COLUMN {quote_identifier(name)} {DEFAULT_DATA_TYPE}"
                )
        except sqlite3.IntegrityError:
            # Another request registered it between our check and the insert
            raise ConflictError('Column already exists')
        except sqlite3.OperationalError as e:
            if 'duplicate column' in str(e):
                raise ConflictError('Column already exists')
            raise

        self.logger.info(f"Added column '{name}' to students")
        return self.get_definition(name)

    def remove_column(self, name: str):
        name = self._clean_name(name)

        if name.lower() in [c.lower() for c in BASE_COLUMNS]:
            raise ValidationError('Cannot delete base columns')

        definition = self.get_definition(name)
        if definition is None:
            raise NotFoundError(f"Column '{name}' is not registered")

        live = [c.lower() for c in self.live_columns()]
        with self.conn:
            self.conn.execute("DELETE FROM table_columns WHERE column_name = ?", [definition.name])
            if definition.name.lower() in live:
                self.conn.execute(f"ALTER TABLE students DROP COLUMN {quote_identifier(definition.name)}")
            else:
                self.logger.warning(f"Column '{definition.name}' was registered but missing from students")

        self.logger.info(f"Removed column '{definition.name}' from students")

    def _clean_name(self, name) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError('Column name is required')
        name = name.strip()
        if len(name) > MAX_COLUMN_NAME_LENGTH:
            raise ValidationError(f"Column name must be at most {MAX_COLUMN_NAME_LENGTH} characters")
        return name
