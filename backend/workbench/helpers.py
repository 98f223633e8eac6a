import json
from collections import namedtuple

ROW_SEPARATOR = ';'
CELL_SEPARATOR = ','

DedupResult = namedtuple('DedupResult', ['unique_tuples', 'first_global_index'])
CoverageResult = namedtuple('CoverageResult', ['valid', 'missing'])


# --- Index mapping (global 0-based <-> local 1-based) ---

def to_local(global_idx, columns):
    """ Returns 1 + position of global_idx in columns, or None if the table does not hold it. """
    for position, col in enumerate(columns):
        if col == global_idx:
            return position + 1
    return None


def to_global(local_idx, columns):
    """ Inverse of to_local. local_idx is the 1-based label shown in the table header. """
    if local_idx < 1 or local_idx > len(columns):
        raise IndexError(f"Local column {local_idx} is outside 1..{len(columns)}")
    return columns[local_idx - 1]


# --- Tuple deduplication ---

def tuple_key(values):
    # JSON keeps the key unambiguous even if a cell contains ',' '|' or ';'
    return json.dumps([str(v) for v in values], ensure_ascii=False, separators=(',', ':'))


def project_row(row, columns):
    return [str(row[i]) if i < len(row) and row[i] is not None else '' for i in columns]


def dedupe(rows, columns):
    """
    Projects every global row onto columns (in columns order) and keeps the first
    occurrence of each distinct tuple.
    Returns DedupResult(unique_tuples, first_global_index) where first_global_index maps
    tuple_key(tuple) -> index of the global row that produced it first.
    """
    unique_tuples = []
    first_global_index = {}
    for row_idx, row in enumerate(rows):
        projected = project_row(row, columns)
        key = tuple_key(projected)
        if key in first_global_index:
            continue
        first_global_index[key] = row_idx
        unique_tuples.append(projected)
    return DedupResult(unique_tuples, first_global_index)


# --- Coverage ---

def check_coverage(table_column_sets, required_columns):
    """
    missing = required - union(table columns), reported in ascending order.
    Overlap between tables is allowed (shared key columns are expected).
    """
    covered = set()
    for cols in table_column_sets:
        covered.update(cols)
    missing = sorted(set(required_columns) - covered)
    return CoverageResult(valid=not missing, missing=missing)


def coverage_message(result):
    if result.valid:
        return "All columns of this relation are covered by the decomposition."
    labels = ', '.join(str(idx + 1) for idx in result.missing)
    return f"The following columns are missing: {labels}."


# --- Tuple text format ("r1c1,r1c2;r2c1,...") ---

def validate_cell(value):
    text = '' if value is None else str(value)
    if CELL_SEPARATOR in text or ROW_SEPARATOR in text:
        raise ValueError(f"Cell value {text!r} contains a reserved separator (',' or ';')")
    return text.strip()


def format_manual_data(rows):
    return ROW_SEPARATOR.join(CELL_SEPARATOR.join(str(c) for c in row) for row in rows)


def parse_manual_data(text):
    """ Splits manualData text into rows of trimmed cells. Blank rows are skipped. """
    if not text:
        return []
    rows = []
    for raw_row in str(text).split(ROW_SEPARATOR):
        if not raw_row.strip():
            continue
        rows.append([cell.strip() for cell in raw_row.split(CELL_SEPARATOR)])
    return rows
