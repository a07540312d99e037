"""Spreadsheet/CSV parsing and column normalization for actor uploads."""

import logging
import re
from io import BytesIO
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .errors import ValidationFailure
from .models import Actor, FeesStatus, UploadCategory

logger = logging.getLogger(__name__)

SPREADSHEET_EXTENSIONS = ('.xlsx', '.xls')
DELIMITED_EXTENSIONS = ('.csv',)

IDENTIFYING_COLUMNS = ('student_id', 'name')

# Canonical column -> accepted header variations (after normalize_col_name)
COLUMN_VARIANTS = {
    'student_id': ["student id", "studentid", "student#", "student number", "student_id", "id", "roll no", "roll number"],
    'name': ["student name", "studentname", "name", "student", "full name"],
    'exam_type': ["exam type", "exam_type", "examtype", "exam"],
    'attendance_rate': [
        "attendance rate", "attendance_rate", "attendance", "attendance %",
        "attendance percent", "attended % to date", "attended pct",
    ],
    'fees_status': ["fees status", "fees_status", "fee status", "fee_status", "status"],
    'amount_paid': ["amount paid", "amount_paid", "paid"],
    'amount_due': ["amount due", "amount_due", "due amount", "balance"],
    'due_date': ["due date", "due_date", "deadline"],
}

# Columns that are never treated as exam subjects
NON_SUBJECT_COLUMNS = {
    'student_id', 'name', 'exam_type', 'attendance_rate', 'fees_status',
    'amount_paid', 'amount_due', 'due_date', 'email', 'parent_email',
    'class_year', 'major', 'semester', 'academic_year',
}

EXAM_TYPES = ('unit_test_1', 'unit_test_2', 'mid_sem', 'end_sem')

# Which actor partitions an upload category may carry
CATEGORY_ACTORS = {
    UploadCategory.EXAM: (Actor.EXAM_DEPARTMENT,),
    UploadCategory.ATTENDANCE: (Actor.FACULTY,),
    UploadCategory.FEES: (Actor.LOCAL_GUARDIAN,),
    UploadCategory.GENERAL: (Actor.EXAM_DEPARTMENT, Actor.FACULTY, Actor.LOCAL_GUARDIAN),
}


def normalize_col_name(col_name) -> str:
    """Normalize a column name for matching (lowercase, trimmed, no dots/commas)."""
    if pd.isna(col_name):
        return ""
    normalized = str(col_name).strip().lower()
    normalized = re.sub(r'[.,]', '', normalized)
    normalized = re.sub(r'\s+', ' ', normalized)
    return normalized.strip()


def file_category(filename: str) -> Optional[str]:
    """Return 'spreadsheet', 'delimited' or None for an unsupported extension."""
    lowered = (filename or "").lower()
    if lowered.endswith(SPREADSHEET_EXTENSIONS):
        return "spreadsheet"
    if lowered.endswith(DELIMITED_EXTENSIONS):
        return "delimited"
    return None


def load_table(file_bytes: bytes, filename: str) -> pd.DataFrame:
    """
    Read an uploaded file into a DataFrame with canonical column names.

    Args:
        file_bytes: Raw file content
        filename: Original filename, used to pick the reader

    Returns:
        DataFrame with recognised headers renamed to canonical names

    Raises:
        ValidationFailure: unsupported extension, empty or unreadable file
    """
    category = file_category(filename)
    if category is None:
        raise ValidationFailure(
            f"Unsupported file type for '{filename}'. Please upload .xlsx, .xls or .csv"
        )
    if not file_bytes:
        raise ValidationFailure(f"'{filename}' is empty")

    try:
        if category == "delimited":
            df = pd.read_csv(BytesIO(file_bytes), dtype=str, keep_default_na=False)
        else:
            df = pd.read_excel(BytesIO(file_bytes), dtype=str)
    except Exception as e:
        raise ValidationFailure(f"Could not read '{filename}': {e}") from e

    df = df.dropna(how='all')
    return normalize_and_rename_columns(df)


def normalize_and_rename_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename recognised header variations to canonical names, first match wins."""
    df = df.copy()
    rename = {}
    for orig_col in df.columns:
        normalized = normalize_col_name(orig_col)
        for target_name, variations in COLUMN_VARIANTS.items():
            if normalized in variations and target_name not in rename.values():
                rename[orig_col] = target_name
                break

    if rename:
        df = df.rename(columns=rename)
        logger.debug("Renamed columns: %s", rename)

    if df.columns.duplicated().any():
        logger.warning("Dropping duplicate columns: %s", df.columns[df.columns.duplicated()].tolist())
        df = df.loc[:, ~df.columns.duplicated(keep='first')]
    return df


def has_identifying_column(df: pd.DataFrame) -> bool:
    return any(col in df.columns for col in IDENTIFYING_COLUMNS)


def clean_text(value) -> str:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return ""
    return str(value).strip()


def clean_numeric_value(value) -> Optional[float]:
    """Convert to float; blanks, NaN and Infinity become None."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip().replace('%', '').replace(',', '')
        if not value:
            return None
    try:
        val = float(value)
    except (ValueError, TypeError):
        return None
    if np.isnan(val) or np.isinf(val):
        return None
    return val


def normalize_pct(x) -> Optional[float]:
    """
    Normalize percentage values to the 0-100 range.
    Handles both 0-1 decimals (e.g., 0.88) and 0-100 percentages (e.g., 88).
    """
    val = clean_numeric_value(x)
    if val is None:
        return None
    if val <= 1.0:
        val *= 100.0
    return float(min(max(val, 0.0), 100.0))


def normalize_fees_status(value) -> FeesStatus:
    text = clean_text(value).lower()
    for status in FeesStatus:
        if status.value.lower() == text:
            return status
    return FeesStatus.PENDING


def normalize_exam_type(value) -> str:
    text = clean_text(value).lower().replace(' ', '_').replace('-', '_')
    return text if text in EXAM_TYPES else "end_sem"


def _exam_fields(row: pd.Series, subject_columns: List[str]) -> Dict[str, Any]:
    grades = {}
    for subject in subject_columns:
        score = clean_numeric_value(row.get(subject))
        if score is not None:
            grades[str(subject).strip()] = score
    return {
        'grades': grades,
        'exam_type': normalize_exam_type(row.get('exam_type')),
    }


def _faculty_fields(row: pd.Series) -> Dict[str, Any]:
    return {'attendance_rate': normalize_pct(row.get('attendance_rate'))}


def _guardian_fields(row: pd.Series) -> Dict[str, Any]:
    return {
        'fees_status': normalize_fees_status(row.get('fees_status')),
        'amount_paid': clean_numeric_value(row.get('amount_paid')) or 0.0,
        'amount_due': clean_numeric_value(row.get('amount_due')) or 0.0,
        'due_date': clean_text(row.get('due_date')),
    }


def is_score_column(series: pd.Series) -> bool:
    """True when every non-blank value is a number in the 0-100 score range."""
    values = [clean_text(v) for v in series]
    values = [v for v in values if v]
    if not values:
        return False
    for value in values:
        score = clean_numeric_value(value)
        if score is None or not 0.0 <= score <= 100.0:
            return False
    return True


def subject_columns_of(df: pd.DataFrame) -> List[str]:
    """Columns holding exam scores; descriptive columns such as phone or program are ignored."""
    return [
        c for c in df.columns
        if c not in NON_SUBJECT_COLUMNS and is_score_column(df[c])
    ]


def _actor_present(df: pd.DataFrame, actor: Actor, subject_columns: List[str]) -> bool:
    if actor == Actor.EXAM_DEPARTMENT:
        return bool(subject_columns)
    if actor == Actor.FACULTY:
        return 'attendance_rate' in df.columns
    return 'fees_status' in df.columns or 'amount_paid' in df.columns or 'amount_due' in df.columns


def extract_contributions(df: pd.DataFrame, category: UploadCategory) -> List[Dict[str, Any]]:
    """
    Turn an uploaded table into per-actor contributions.

    Rows without a student id are skipped. For a 'general' upload each
    partition whose columns are present in the file yields its own
    contribution, so every contribution still belongs to exactly one actor.

    Args:
        df: Normalized DataFrame from load_table
        category: Upload category the file was posted to

    Returns:
        List of dicts with keys student_id, name, actor and fields
    """
    category = UploadCategory(category)
    subject_columns = subject_columns_of(df)
    actors = CATEGORY_ACTORS[category]
    if category == UploadCategory.GENERAL:
        actors = tuple(a for a in actors if _actor_present(df, a, subject_columns))
        if not actors:
            raise ValidationFailure("No exam, attendance or fees columns found in file")
    elif category == UploadCategory.ATTENDANCE and 'attendance_rate' not in df.columns:
        raise ValidationFailure("Attendance column not found in file")

    if 'student_id' not in df.columns:
        raise ValidationFailure("Student ID column not found in file")

    contributions = []
    skipped = 0
    for _, row in df.iterrows():
        student_id = clean_text(row.get('student_id'))
        if not student_id:
            skipped += 1
            continue
        name = clean_text(row.get('name'))

        for actor in actors:
            if actor == Actor.EXAM_DEPARTMENT:
                fields = _exam_fields(row, subject_columns)
                if not fields['grades']:
                    # No scores in this row; leave the exam partition alone
                    continue
            elif actor == Actor.FACULTY:
                fields = _faculty_fields(row)
            else:
                fields = _guardian_fields(row)
            contributions.append({
                'student_id': student_id,
                'name': name,
                'actor': actor,
                'fields': fields,
            })

    if skipped:
        logger.warning("Skipped %d rows without a student id", skipped)
    return contributions
