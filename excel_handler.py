import io
import logging
from typing import Dict, List, Optional

import pandas as pd
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from errors import ConflictError, ValidationError
from models import SYSTEM_COLUMNS, ImportResult, StudentRecord
from schema_registry import SchemaRegistry
from student_store import StudentStore

ALLOWED_EXTENSIONS = {'xlsx', 'xlsm', 'csv'}

HEADER_SCAN_MODES = ('all_rows', 'first_row')

# First alias present in a sheet is imported as the base column
HEADER_ALIASES = {
    'student_id': ['student_id', 'roll_number', 'roll_no', 'rollno', 'student_no', 'admission_no'],
    'name': ['name', 'student_name', 'full_name'],
    'class': ['class', 'class_name', 'std', 'standard', 'grade'],
    'section': ['section', 'sec', 'division'],
}


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def normalize_header(header) -> str:
    return '_'.join(str(header).strip().lower().split())


class ExcelHandler:
    def __init__(self, registry: SchemaRegistry, store: StudentStore, header_scan: str = 'all_rows'):
        if header_scan not in HEADER_SCAN_MODES:
            raise ValueError(f"header_scan must be one of {HEADER_SCAN_MODES}, got {header_scan!r}")
        self.logger = logging.getLogger(__name__)
        self.registry = registry
        self.store = store
        self.header_scan = header_scan

    def read_rows(self, file_bytes: bytes, filename: Optional[str] = None) -> List[Dict[str, str]]:
        """
        Read the first sheet into a list of row dicts, every cell as stripped
        text ('' for blanks). Headers that name a known column take its stored
        spelling; the rest are normalised, and well-known spellings of the
        base columns are mapped onto them.
        """
        if not file_bytes:
            raise ValidationError('Uploaded file is empty')

        # Only truly empty cells are blank, "NA" or "None" is a value
        try:
            if filename and filename.lower().endswith('.csv'):
                df = pd.read_csv(io.BytesIO(file_bytes), dtype=str,
                                 keep_default_na=False, na_values=[''])
            else:
                df = pd.read_excel(io.BytesIO(file_bytes), sheet_name=0, dtype=str,
                                   keep_default_na=False, na_values=[''])
        except Exception as e:
            self.logger.error(f"Error reading spreadsheet: {str(e)}")
            raise ValidationError(f"Could not read spreadsheet: {str(e)}")

        df = self._normalize_columns(df)
        df = df.dropna(how='all')
        if df.empty or len(df.columns) == 0:
            raise ValidationError('Excel file is empty')

        df = df.fillna('')
        for col in df.columns:
            df[col] = df[col].astype(str).str.strip()

        return df.to_dict('records')

    def _normalize_columns(self, df: pd.DataFrame) -> pd.DataFrame:
        # Blank header cells come back as "Unnamed: n"
        keep = [c for c in df.columns if not str(c).startswith('Unnamed:')]
        df = df[keep].copy()

        known = self.registry.list_columns()
        exact = {c.strip().lower(): c for c in known}
        normalized = {normalize_header(c): c for c in known}
        live = {c.lower() for c in self.registry.live_columns()}

        names = []
        matched = []
        for header in df.columns:
            name = exact.get(str(header).strip().lower()) or normalized.get(normalize_header(header))
            matched.append(name is not None)
            names.append(name or normalize_header(header))

        # Aliases only apply to headers that name no existing column
        for base, aliases in HEADER_ALIASES.items():
            if base in names:
                continue
            for alias in aliases:
                candidates = [i for i, n in enumerate(names)
                              if n == alias and not matched[i] and alias not in live]
                if candidates:
                    names[candidates[0]] = base
                    break
        df.columns = names

        dropped = [c for c in df.columns if c in SYSTEM_COLUMNS or not c]
        if dropped:
            self.logger.info(f"Ignoring columns {dropped}")
            df = df[[c for c in df.columns if c not in dropped]]

        duplicated = df.columns.duplicated()
        if duplicated.any():
            self.logger.warning(f"Duplicate headers {list(df.columns[duplicated])}, keeping the first")
            df = df.loc[:, ~duplicated]

        return df.copy()

    def discover_columns(self, rows: List[Dict[str, str]]) -> List[str]:
        """
        Columns that carry data, in header order. In 'first_row' mode only the
        first data row is looked at.
        """
        if not rows:
            return []
        sample = rows[:1] if self.header_scan == 'first_row' else rows
        return [col for col in rows[0] if any(row.get(col) for row in sample)]

    def import_file(self, file_bytes: bytes, filename: Optional[str] = None) -> ImportResult:
        rows = self.read_rows(file_bytes, filename)
        result = ImportResult()

        known = {c.lower() for c in self.registry.list_columns()}
        for col in self.discover_columns(rows):
            if col.lower() in known:
                continue
            try:
                self.registry.add_column(col)
                result.new_columns_added.append(col)
            except ConflictError:
                self.logger.info(f"Column '{col}' already exists, skipping")

        # Line 1 of the sheet is the header
        for line, row in enumerate(rows, start=2):
            fields = {k: v for k, v in row.items() if v}
            try:
                self.store.upsert_by_student_id(fields)
                result.processed += 1
            except Exception as e:
                result.failed += 1
                self.logger.warning(f"Row {line} not imported: {str(e)}")

        self.logger.info(f"Imported {result.processed} rows ({result.failed} failed), "
                         f"new columns: {result.new_columns_added}")
        return result

    def export_students(self, records: List[StudentRecord], columns: List[str]) -> bytes:
        """Write students to an .xlsx workbook that read_rows can load back."""
        headers = ['id'] + columns + ['created_at']
        df = pd.DataFrame([r.to_dict() for r in records], columns=headers)

        header_font = Font(bold=True, color="FFFFFF")
        header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
        border = Border(
            left=Side(style='thin'),
            right=Side(style='thin'),
            top=Side(style='thin'),
            bottom=Side(style='thin')
        )

        buffer = io.BytesIO()
        with pd.ExcelWriter(buffer, engine='openpyxl') as writer:
            df.to_excel(writer, index=False, sheet_name='Students')
            ws = writer.sheets['Students']

            for col_idx in range(1, len(headers) + 1):
                cell = ws.cell(row=1, column=col_idx)
                cell.font = header_font
                cell.fill = header_fill
                cell.border = border
                cell.alignment = Alignment(horizontal='center', vertical='center')

            # Auto-adjust column widths
            for col_idx in range(1, len(headers) + 1):
                max_length = 0
                for row_idx in range(1, ws.max_row + 1):
                    value = ws.cell(row=row_idx, column=col_idx).value
                    if value is not None:
                        max_length = max(max_length, len(str(value)))
                ws.column_dimensions[get_column_letter(col_idx)].width = min(max_length + 2, 50)

        self.logger.info(f"Exported {len(records)} students")
        return buffer.getvalue()
