import logging
import math
import sqlite3
from typing import Dict, List, Mapping, Optional

from database import query_db, quote_identifier
from errors import NotFoundError, ValidationError
from models import CREATED, UPDATED, StudentRecord, UpsertResult
from schema_registry import SchemaRegistry


def clean_value(value) -> Optional[str]:
    """Text to store for a cell, or None when there is nothing worth writing."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    text = str(value).strip()
    return text or None


class StudentStore:
    def __init__(self, conn: sqlite3.Connection, registry: Optional[SchemaRegistry] = None):
        self.conn = conn
        self.registry = registry or SchemaRegistry(conn)
        self.logger = logging.getLogger(__name__)

    def _column_lookup(self) -> Dict[str, str]:
        return {c.lower(): c for c in self.registry.list_columns()}

    def find(self, filters: Optional[Mapping[str, str]] = None) -> List[StudentRecord]:
        """
        Search students. Each filter is a case-insensitive substring match on
        its column and all filters must match. Empty filter values are skipped.
        """
        lookup = self._column_lookup()
        clauses = []
        params = []

        for key, value in (filters or {}).items():
            if value is None or value == '':
                continue
            column = lookup.get(str(key).strip().lower())
            if column is None:
                raise ValidationError(f"Unknown filter column: {key}")
            clauses.append(f"instr(casefold({quote_identifier(column)}), ?) > 0")
            params.append(str(value).casefold())

        query = "SELECT * FROM students"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"

        return [StudentRecord.from_row(r) for r in query_db(self.conn, query, params)]

    def get(self, student_id: str) -> StudentRecord:
        row = query_db(self.conn, "SELECT * FROM students WHERE student_id = ?", [student_id], one=True)
        if row is None:
            raise NotFoundError(f"Student '{student_id}' not found")
        return StudentRecord.from_row(row)

    def count(self) -> int:
        return query_db(self.conn, "SELECT COUNT(*) AS n FROM students", one=True)['n']

    def upsert_by_student_id(self, record: Mapping[str, object]) -> UpsertResult:
        """
        Insert the student or update the non-empty fields of the existing one.

        Blank values are left out entirely: they never overwrite stored data
        and never block inserting a partial row.
        """
        if not isinstance(record, Mapping):
            raise ValidationError('Student record must be an object')

        lookup = self._column_lookup()
        student_id = None
        values = {}
        for key, value in record.items():
            column = lookup.get(str(key).strip().lower())
            if column is None:
                raise ValidationError(f"Unknown column: {key}")
            text = clean_value(value)
            if column == 'student_id':
                student_id = text
            elif text is not None:
                values[column] = text

        if not student_id:
            raise ValidationError('student_id is required')

        with self.conn:
            # Take the write lock before looking, so check and write can't interleave
            self.conn.execute('BEGIN IMMEDIATE')
            existing = query_db(self.conn, "SELECT id FROM students WHERE student_id = ?",
                                [student_id], one=True)
            if existing is None:
                columns = ['student_id'] + list(values)
                self.conn.execute(
                    f"INSERT INTO students ({', '.join(quote_identifier(c) for c in columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    [student_id] + list(values.values())
                )
                action = CREATED
            else:
                if values:
                    assignments = ', '.join(f"{quote_identifier(c)} = ?" for c in values)
                    self.conn.execute(
                        f"UPDATE students SET {assignments} WHERE id = ?",
                        list(values.values()) + [existing['id']]
                    )
                action = UPDATED

        self.logger.debug(f"Student {student_id} {action}")
        return UpsertResult(student_id=student_id, action=action)
