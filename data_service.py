import io
import logging
import numbers
import re
import sqlite3
import warnings
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from lumora_errors import FileDecodeError, QueryExecutionError, UnsupportedFileTypeError
from lumora_types import ColumnDefinition, ColumnType, Row, WORKING_TABLE

logger = logging.getLogger(__name__)

# BOOLEAN-declared columns come back as bool instead of 0/1
sqlite3.register_converter("BOOLEAN", lambda raw: raw not in (b"0", b""))

# Booleans inside BLOB (mixed) columns are stored as these blobs
BOOL_BLOBS = {True: b"lumora:true", False: b"lumora:false"}
BLOB_BOOLS = {blob: flag for flag, blob in BOOL_BLOBS.items()}


def to_native(value: Any) -> Any:
    """Convert pandas / numpy scalars to plain Python values (missing -> None)"""
    if value is None or value is pd.NA or value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and np.isnan(value):
        return None
    return value


# ============================================================================
# File Parsing
# ============================================================================

class DataIngestor:
    """Turns an uploaded CSV / Excel file into a list of row records"""

    SUPPORTED_EXTENSIONS = {'.csv', '.xlsx', '.xls'}

    @classmethod
    def is_supported(cls, filename: str) -> bool:
        return Path(filename or "").suffix.lower() in cls.SUPPORTED_EXTENSIONS

    @classmethod
    def parse_file(cls, filename: str, content: bytes) -> List[Row]:
        """
        Decode file content into rows keyed by the header row.

        CSV values are type-coerced (numbers, booleans) and blank lines skipped.
        Spreadsheets are read from the first sheet only.
        """
        suffix = Path(filename or "").suffix.lower()
        if suffix not in cls.SUPPORTED_EXTENSIONS:
            raise UnsupportedFileTypeError("Unsupported file type. Please upload CSV or Excel.")

        try:
            if suffix == '.csv':
                df = pd.read_csv(io.BytesIO(content), skip_blank_lines=True)
            else:
                df = pd.read_excel(io.BytesIO(content), sheet_name=0)
        except pd.errors.EmptyDataError:
            logger.info(f"{filename} is empty, no rows loaded")
            return []
        except Exception as e:
            raise FileDecodeError(f"Failed to read {filename}: {str(e)}") from e

        rows = cls.dataframe_to_rows(df)
        logger.info(f"✓ Parsed {filename}: {len(rows)} rows × {len(df.columns)} columns")
        return rows

    @classmethod
    def load_path(cls, file_path: str) -> List[Row]:
        """Parse a file from disk"""
        path = Path(file_path)
        if not cls.is_supported(path.name):
            raise UnsupportedFileTypeError("Unsupported file type. Please upload CSV or Excel.")
        try:
            content = path.read_bytes()
        except OSError as e:
            raise FileDecodeError(f"Failed to read {file_path}: {str(e)}") from e
        return cls.parse_file(path.name, content)

    @staticmethod
    def distinct_column_names(columns) -> List[str]:
        """
        Suffix headers that only differ by case from an earlier one
        (Region, region -> Region, region_1). SQLite column names are
        case-insensitive.
        """
        seen = set()
        names = []
        for column in columns:
            name = candidate = str(column)
            suffix = 1
            while candidate.lower() in seen:
                candidate = f"{name}_{suffix}"
                suffix += 1
            if candidate != name:
                logger.warning(f"⚠ Renamed column '{name}' to '{candidate}'")
            seen.add(candidate.lower())
            names.append(candidate)
        return names

    @classmethod
    def dataframe_to_rows(cls, df: pd.DataFrame) -> List[Row]:
        # convert_dtypes keeps integer columns with gaps as integers
        df = df.convert_dtypes()
        df.columns = cls.distinct_column_names(df.columns)
        records = df.astype(object).where(df.notna(), None).to_dict(orient='records')
        return [{str(k): to_native(v) for k, v in record.items()} for record in records]


# ============================================================================
# Schema Inference
# ============================================================================

class SchemaInferencer:
    """Derives column types from the first row of a dataset"""

    DIGIT_PATTERN = re.compile(r'\d')
    # pandas fills in today's date for these
    TIME_ONLY_PATTERN = re.compile(r'^\s*\d{1,2}:\d{2}(:\d{2}(\.\d+)?)?\s*([ap]\.?m\.?)?\s*$', re.IGNORECASE)

    @staticmethod
    def looks_like_date(value: str) -> bool:
        """Long enough, has a digit, and parses as a calendar date"""
        if len(value) <= 5 or not SchemaInferencer.DIGIT_PATTERN.search(value):
            return False
        if SchemaInferencer.TIME_ONLY_PATTERN.match(value):
            return False
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            try:
                parsed = pd.to_datetime(value, errors='coerce')
            except (ValueError, TypeError, OverflowError):
                return False
        return parsed is not None and not pd.isna(parsed)

    @staticmethod
    def classify_value(value: Any) -> ColumnType:
        if isinstance(value, (bool, np.bool_)):
            return ColumnType.BOOLEAN
        if isinstance(value, numbers.Number):
            if isinstance(value, float) and np.isnan(value):
                return ColumnType.UNKNOWN
            return ColumnType.NUMBER
        if isinstance(value, (datetime, date, time, np.datetime64)):
            return ColumnType.DATE
        if isinstance(value, str):
            if SchemaInferencer.looks_like_date(value):
                return ColumnType.DATE
            return ColumnType.STRING
        return ColumnType.UNKNOWN

    @classmethod
    def infer_schema(cls, rows: List[Row]) -> List[ColumnDefinition]:
        """One column per key of the first row, in that row's order"""
        if not rows:
            return []
        sample = rows[0]
        return [ColumnDefinition(name=key, type=cls.classify_value(value)) for key, value in sample.items()]

    @classmethod
    def find_type_conflicts(cls, rows: List[Row], columns: List[ColumnDefinition]) -> List[str]:
        """
        Columns whose later non-null values classify differently from the
        first row. Inferred types are left as they are.
        """
        conflicts = []
        for column in columns:
            for row in rows[1:]:
                value = row.get(column.name)
                if value is None:
                    continue
                observed = cls.classify_value(value)
                if observed in (ColumnType.UNKNOWN, column.type):
                    continue
                conflicts.append(column.name)
                break

        if conflicts:
            logger.warning(f"⚠ Mixed value types after the first row in: {', '.join(conflicts)}")
        return conflicts


# ============================================================================
# SQL Query Tool
# ============================================================================

class SQLQueryTool:
    """Owns the in-memory working table and runs trusted SQL against it"""

    def __init__(self, table_name: str = WORKING_TABLE, db_path: str = ":memory:"):
        self.db_path = db_path
        self.table_name = table_name
        self.conn = None
        self.row_count = 0
        self._create_connection()

    def _create_connection(self):
        try:
            self.conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                detect_types=sqlite3.PARSE_DECLTYPES
            )
        except sqlite3.Error as e:
            raise QueryExecutionError(f"Failed to create database: {str(e)}") from e

    @staticmethod
    def _storable(value: Any) -> Any:
        value = to_native(value)
        if isinstance(value, (datetime, date, time)):
            return value.isoformat()
        return value

    @staticmethod
    def _declared_type(values: List[Any]) -> str:
        present = [v for v in values if v is not None]
        if not present:
            return "TEXT"
        if all(isinstance(v, bool) for v in present):
            return "BOOLEAN"
        if all(isinstance(v, int) and not isinstance(v, bool) for v in present):
            return "INTEGER"
        if all(isinstance(v, numbers.Real) and not isinstance(v, bool) for v in present):
            return "REAL"
        if all(isinstance(v, str) for v in present):
            return "TEXT"
        # BLOB affinity stores each value as given
        return "BLOB"

    @staticmethod
    def _tag_bool(value: Any) -> Any:
        if isinstance(value, bool):
            return BOOL_BLOBS[value]
        return value

    @staticmethod
    def _untag_bool(value: Any) -> Any:
        if isinstance(value, bytes):
            return BLOB_BOOLS.get(value, value)
        return value

    def _to_frame(self, rows: List[Row]) -> pd.DataFrame:
        columns = list(rows[0].keys()) if rows else []
        records = [[self._storable(row.get(col)) for col in columns] for row in rows]
        return pd.DataFrame(records, columns=columns, dtype=object)

    def evict(self):
        """Drop the working table and everything in it"""
        try:
            self.conn.execute(f'DROP TABLE IF EXISTS "{self.table_name}"')
            self.conn.commit()
        except sqlite3.Error as e:
            raise QueryExecutionError(f"Failed to clear {self.table_name}: {str(e)}") from e
        self.row_count = 0

    def load(self, rows: List[Row]) -> int:
        """Replace the working table contents with rows"""
        frame = self._to_frame(rows)
        self.evict()

        if frame.columns.empty:
            logger.info(f"No columns to load, {self.table_name} left empty")
            return 0

        dtypes = {col: self._declared_type(frame[col].tolist()) for col in frame.columns}
        for col, declared in dtypes.items():
            if declared == "BLOB":
                frame[col] = frame[col].map(self._tag_bool)
        try:
            frame.to_sql(self.table_name, self.conn, if_exists='replace', index=False, dtype=dtypes)
            self.conn.commit()
        except Exception as e:
            raise QueryExecutionError(f"Failed to load data into {self.table_name}: {str(e)}") from e

        self.row_count = len(frame)
        logger.info(f"✓ Loaded {self.table_name}: {len(frame)} rows × {len(frame.columns)} columns")
        return self.row_count

    def execute(self, sql: str) -> List[Row]:
        """Run the SQL unmodified and return result rows"""
        try:
            # cursor rows keep native types; read_sql_query would turn int gaps into floats
            cursor = self.conn.execute(sql)
            columns = [d[0] for d in cursor.description] if cursor.description else []
            result = [
                {col: self._untag_bool(value) for col, value in zip(columns, record)}
                for record in cursor.fetchall()
            ]
        except (sqlite3.Error, sqlite3.Warning) as e:
            logger.error(f"SQL Execution Error: {str(e)}")
            raise QueryExecutionError(f"Failed to execute SQL: {str(e)}") from e

        logger.info(f"Query returned {len(result)} rows")
        return result

    def execute_query(self, sql: str, rows: List[Row]) -> List[Row]:
        """Load rows into the working table, then run sql against it"""
        self.load(rows)
        return self.execute(sql)

    def get_schema_info(self) -> Dict[str, Any]:
        """Get table schema information"""
        cursor = self.conn.cursor()
        cursor.execute(f'PRAGMA table_info("{self.table_name}")')
        columns = cursor.fetchall()
        if not columns:
            return {"table_name": self.table_name, "columns": [], "row_count": 0}

        cursor.execute(f'SELECT COUNT(*) FROM "{self.table_name}"')
        row_count = cursor.fetchone()[0]

        return {
            "table_name": self.table_name,
            "columns": [{"name": col[1], "type": col[2]} for col in columns],
            "row_count": row_count
        }

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None


def infer_schema(rows: List[Row]) -> List[ColumnDefinition]:
    return SchemaInferencer.infer_schema(rows)


def parse_file(filename: str, content: bytes) -> List[Row]:
    return DataIngestor.parse_file(filename, content)


def execute_query(sql: str, rows: List[Row], tool: Optional[SQLQueryTool] = None) -> List[Row]:
    """One-shot execution against a throwaway working table unless a tool is given"""
    owned = tool is None
    tool = tool or SQLQueryTool()
    try:
        return tool.execute_query(sql, rows)
    finally:
        if owned:
            tool.close()
