from dataclasses import dataclass, field
from typing import Dict, Optional

BASE_COLUMNS = ['student_id', 'name', 'class', 'section']

# Present on the students table but owned by the database
SYSTEM_COLUMNS = ['id', 'created_at']

WORK_STATUSES = ['pending', 'started', 'completed']

CREATED = 'created'
UPDATED = 'updated'


@dataclass
class ColumnDefinition:
    """A dynamic student column registered at runtime."""
    name: str
    data_type: str = 'TEXT'
    created_at: Optional[str] = None


@dataclass
class StudentRecord:
    """Fixed student attributes plus the dynamic ones from the registry."""
    student_id: str
    name: Optional[str] = None
    class_name: Optional[str] = None
    section: Optional[str] = None
    attributes: Dict[str, Optional[str]] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> 'StudentRecord':
        data = dict(row)
        record = cls(
            student_id=data.pop('student_id'),
            name=data.pop('name', None),
            class_name=data.pop('class', None),
            section=data.pop('section', None),
            id=data.pop('id', None),
            created_at=data.pop('created_at', None),
        )
        record.attributes = data
        return record

    def to_dict(self) -> Dict[str, object]:
        data = {
            'id': self.id,
            'student_id': self.student_id,
            'name': self.name,
            'class': self.class_name,
            'section': self.section,
        }
        data.update(self.attributes)
        data['created_at'] = self.created_at
        return data


@dataclass
class UpsertResult:
    student_id: str
    action: str

    @property
    def created(self) -> bool:
        return self.action == CREATED


@dataclass
class ImportResult:
    processed: int = 0
    failed: int = 0
    new_columns_added: list = field(default_factory=list)


@dataclass
class WorkItem:
    id: int
    task: str
    deadline: str
    status: str = 'pending'
    start_date: Optional[str] = None
    completed_date: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> 'WorkItem':
        return cls(**dict(row))

    def to_dict(self) -> Dict[str, object]:
        return {
            'id': self.id,
            'task': self.task,
            'status': self.status,
            'start_date': self.start_date,
            'deadline': self.deadline,
            'completed_date': self.completed_date,
            'created_at': self.created_at,
        }
