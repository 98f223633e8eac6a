import logging
import re
from dataclasses import dataclass

from .helpers import to_local, to_global, tuple_key, project_row

logger = logging.getLogger(__name__)

FD_ARROW = '->'
FD_SEPARATOR = ';'
_FD_SPLIT_RE = re.compile(r'[;\r\n]+')


@dataclass(frozen=True)
class FunctionalDependency:
    """ lhs -> rhs over column indices. Global FDs hold 0-based indices, local FDs 1-based. """
    lhs: tuple
    rhs: tuple

    def attributes(self):
        return set(self.lhs) | set(self.rhs)

    def __str__(self):
        return format_fd(self, one_based=False)


def _unique(values):
    seen = []
    for v in values:
        if v not in seen:
            seen.append(v)
    return tuple(seen)


def normalize_fd_string(text):
    """ "1, 4 → 3" -> "1,4->3" """
    return re.sub(r'\s+', '', str(text)).replace('→', FD_ARROW)


def parse_fd(text):
    """
    Parses one wire clause like "1,4->3" (1-based) into a 0-based FunctionalDependency.
    Returns None for anything unparsable; callers drop those clauses.
    """
    if not text or not str(text).strip():
        return None
    parts = normalize_fd_string(text).split(FD_ARROW)
    if len(parts) != 2:
        return None
    try:
        lhs = [int(p) - 1 for p in parts[0].split(',') if p]
        rhs = [int(p) - 1 for p in parts[1].split(',') if p]
    except ValueError:
        return None
    if not rhs or any(i < 0 for i in lhs + rhs):
        return None
    return FunctionalDependency(_unique(lhs), _unique(rhs))


def parse_fds(value):
    """
    Parses FD text ("1->2;2,3->4", newlines also accepted) or a list of clauses.
    Malformed clauses are skipped with a warning.
    """
    if not value:
        return []
    clauses = value if isinstance(value, (list, tuple)) else _FD_SPLIT_RE.split(str(value))
    fds = []
    for clause in clauses:
        clause = str(clause).strip()
        if not clause:
            continue
        fd = parse_fd(clause)
        if fd is None:
            logger.warning("Dropping unparsable FD clause %r", clause)
            continue
        if fd not in fds:
            fds.append(fd)
    return fds


def format_fd(fd, one_based=True):
    shift = 1 if one_based else 0
    lhs = ','.join(str(i + shift) for i in fd.lhs)
    rhs = ','.join(str(i + shift) for i in fd.rhs)
    return f"{lhs}{FD_ARROW}{rhs}"


def format_local_fd(fd):
    # local FDs already carry 1-based numbers
    return format_fd(fd, one_based=False)


def format_fds(fds, one_based=True):
    return FD_SEPARATOR.join(format_fd(fd, one_based) for fd in fds)


# --- FD projection ---

def project_fd(fd, columns):
    """
    Rewrites a global FD into the table-local numbering of columns.
    Returns None when any attribute of the FD is not held by the table.
    An empty lhs (constant column) is kept as long as the rhs is present.
    """
    lhs_local = []
    for attr in fd.lhs:
        local = to_local(attr, columns)
        if local is None:
            return None
        lhs_local.append(local)
    rhs_local = []
    for attr in fd.rhs:
        local = to_local(attr, columns)
        if local is None:
            return None
        rhs_local.append(local)
    return FunctionalDependency(tuple(lhs_local), tuple(rhs_local))


def project_fds(fds, columns):
    """ Projects every FD, silently dropping the ones that do not apply to columns. """
    projected = []
    for fd in fds:
        local = project_fd(fd, columns)
        if local is not None and local not in projected:
            projected.append(local)
    return projected


def expand_fd(local_fd, columns):
    """ Maps a table-local FD back to global indices. """
    return FunctionalDependency(
        tuple(to_global(i, columns) for i in local_fd.lhs),
        tuple(to_global(i, columns) for i in local_fd.rhs),
    )


# --- Closure / BCNF hint ---

def calculate_closure(attributes_to_close, fds):
    """ Attribute closure X+ under fds (basic iterative approach). """
    closure = set(attributes_to_close)
    changed = True
    while changed:
        changed = False
        for fd in fds:
            if set(fd.lhs).issubset(closure) and not set(fd.rhs).issubset(closure):
                closure.update(fd.rhs)
                changed = True
    return closure


def looks_bcnf(columns, fds):
    """
    Client-side hint for a base relation, never a verdict: a relation with no applicable
    FDs, or whose applicable FDs all have a superkey on the left, is reported as BCNF.
    """
    if not columns:
        return True
    column_set = set(columns)
    applicable = [fd for fd in fds if fd.attributes().issubset(column_set)]
    non_trivial = [fd for fd in applicable if not set(fd.rhs).issubset(fd.lhs)]
    if not non_trivial:
        return True
    for fd in non_trivial:
        if not column_set.issubset(calculate_closure(fd.lhs, applicable)):
            return False
    return True


# --- Redundant tables ---

def find_redundant_tables(tables):
    """
    tables: list of (label, columns). Flags every table whose column set is a proper
    subset of another table's. Returns (indices_to_remove, warnings), indices ascending.
    """
    to_remove = set()
    warnings = []
    for i, (label_i, cols_i) in enumerate(tables):
        if i in to_remove:
            continue
        set_i = set(cols_i)
        for j, (label_j, cols_j) in enumerate(tables):
            if i == j or j in to_remove:
                continue
            set_j = set(cols_j)
            if set_i < set_j:
                warnings.append(_redundant_warning(label_i, cols_i, label_j, cols_j))
                to_remove.add(i)
                break
            if set_j < set_i:
                warnings.append(_redundant_warning(label_j, cols_j, label_i, cols_i))
                to_remove.add(j)
    return sorted(to_remove), warnings


def _redundant_warning(sub_label, sub_cols, super_label, super_cols):
    sub_display = ', '.join(str(c + 1) for c in sub_cols)
    super_display = ', '.join(str(c + 1) for c in super_cols)
    return (f"{sub_label} (columns: {sub_display}) is a subset of {super_label} "
            f"(columns: {super_display}) and has been removed as it is redundant.")


# --- RIC mapping ---

def project_ric(global_ric, union_cols, rows, columns, dedup):
    """
    Maps a per-global-row RIC matrix (columns ordered as union_cols) onto the unique
    tuples of one table, using the first global row behind each tuple.
    Returns None if the matrix cannot cover the table.
    """
    if not global_ric or not columns:
        return None
    positions = {}
    for pos, col in enumerate(union_cols):
        positions.setdefault(col, pos)
    if any(col not in positions for col in columns):
        logger.warning("Global RIC does not cover columns %s (union %s)", columns, union_cols)
        return None

    matrix = []
    for values in dedup.unique_tuples:
        row_idx = dedup.first_global_index.get(tuple_key(values))
        if row_idx is None or row_idx >= len(global_ric):
            logger.warning("No global RIC row for tuple %s", values)
            return None
        if project_row(rows[row_idx], columns) != values:
            # first_global_index must point at a row producing this tuple
            logger.warning("Global row %d does not match tuple %s", row_idx, values)
            return None
        source = global_ric[row_idx]
        try:
            matrix.append([float(source[positions[col]]) for col in columns])
        except (IndexError, TypeError, ValueError):
            logger.warning("Global RIC row %d is malformed: %r", row_idx, source)
            return None
    return matrix
