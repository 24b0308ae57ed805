import re
import logging
import sqlite3
from datetime import date
from typing import List, Optional

from database import query_db
from errors import NotFoundError, ValidationError
from models import WORK_STATUSES, WorkItem


def parse_date(value, field_name: str, required: bool = False) -> Optional[str]:
    """Validate an ISO YYYY-MM-DD date and return it as stored text."""
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field_name} is required")
        return None
    try:
        # Timestamps keep only their date part; anything else must be a bare date
        text = re.split(r"[T ]", str(value).strip(), maxsplit=1)[0]
        return date.fromisoformat(text).isoformat()
    except ValueError:
        raise ValidationError(f"{field_name} must be a date in YYYY-MM-DD format")


def parse_status(value, default: Optional[str] = None) -> str:
    if value is None or value == '':
        if default is None:
            raise ValidationError('status is required')
        return default
    if value not in WORK_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(WORK_STATUSES)}")
    return value


class WorkStatusTracker:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.logger = logging.getLogger(__name__)

    def list(self) -> List[WorkItem]:
        """All work items, earliest deadline first."""
        rows = query_db(self.conn, "SELECT * FROM work_status ORDER BY deadline ASC, id ASC")
        return [WorkItem.from_row(r) for r in rows]

    def get(self, item_id: int) -> WorkItem:
        row = query_db(self.conn, "SELECT * FROM work_status WHERE id = ?", [item_id], one=True)
        if row is None:
            raise NotFoundError(f"Work item {item_id} not found")
        return WorkItem.from_row(row)

    def create(self, task: str, status: Optional[str] = None, start_date=None, deadline=None) -> WorkItem:
        if not isinstance(task, str) or not task.strip():
            raise ValidationError('task is required')
        status = parse_status(status, default='pending')
        start_date = parse_date(start_date, 'startDate')
        deadline = parse_date(deadline, 'deadline', required=True)

        with self.conn:
            cur = self.conn.execute(
                "INSERT INTO work_status (task, status, start_date, deadline) VALUES (?, ?, ?, ?)",
                (task.strip(), status, start_date, deadline)
            )
            item_id = cur.lastrowid

        self.logger.info(f"Created work item {item_id}: {task.strip()}")
        return self.get(item_id)

    def update(self, item_id: int, status: str, completed_date=None):
        status = parse_status(status)
        completed_date = parse_date(completed_date, 'completedDate')

        with self.conn:
            cur = self.conn.execute(
                "UPDATE work_status SET status = ?, completed_date = ? WHERE id = ?",
                (status, completed_date, item_id)
            )
        if cur.rowcount == 0:
            raise NotFoundError(f"Work item {item_id} not found")
        self.logger.info(f"Work item {item_id} set to {status}")
