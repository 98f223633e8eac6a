import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .helpers import (dedupe, check_coverage, validate_cell, parse_manual_data,
                      format_manual_data)
from .normalization_utils import (project_fds, find_redundant_tables, format_fds,
                                  format_local_fd, looks_bcnf)

logger = logging.getLogger(__name__)


class DecompositionLockedError(ValueError):
    """ Raised for any column/table mutation while the decomposition is locked. """


class ColumnResolutionError(ValueError):
    """ A column index that cannot be resolved against the base relation or table. """


class UnknownTableError(ValueError, LookupError):
    pass


class CoverageError(ValueError):
    def __init__(self, coverage):
        self.coverage = coverage
        labels = ', '.join(str(i + 1) for i in coverage.missing)
        super().__init__(f"The following columns are missing: {labels}.")


# --- Relations ---

class GlobalRelation:
    """
    Rows of string cells with a column count fixed at load time. Never mutated after
    construction; later normalization stages build new relations through derive().
    """

    def __init__(self, rows, width=None):
        cleaned = [[validate_cell(c) for c in row] for row in rows]
        longest = max((len(r) for r in cleaned), default=0)
        if width is None:
            width = longest
        elif longest > width:
            raise ValueError(f"Row has {longest} cells but the relation has {width} columns")
        self.width = width
        # short rows are padded so every row spans the full width
        self.rows = tuple(tuple(r + [''] * (width - len(r))) for r in cleaned)

    @classmethod
    def from_manual_data(cls, text, width=None):
        return cls(parse_manual_data(text), width)

    @property
    def columns(self):
        return list(range(self.width))

    def to_manual_data(self, columns=None):
        if columns is None:
            return format_manual_data(self.rows)
        return format_manual_data(dedupe(self.rows, columns).unique_tuples)

    def derive(self, columns, tuples):
        """
        Builds the relation of a later stage from one table's unique tuples. Global
        numbering is kept: cells outside columns are left empty.
        """
        rows = []
        for values in tuples:
            row = [''] * self.width
            for col, value in zip(columns, values):
                row[col] = value
            rows.append(row)
        return GlobalRelation(rows, self.width)

    def __len__(self):
        return len(self.rows)


@dataclass
class DecomposedTable:
    id: int
    columns: List[int]
    rows: list = field(default_factory=list)
    first_global_index: dict = field(default_factory=dict)
    fds_original: list = field(default_factory=list)
    fds_local: list = field(default_factory=list)
    transitive_fds: list = field(default_factory=list)
    normal_form: Optional[str] = None
    ric: Optional[list] = None
    locked: bool = False

    @property
    def label(self):
        return f"T{self.id}"

    def clear_results(self):
        self.transitive_fds = []
        self.normal_form = None
        self.ric = None

    def set_ric(self, matrix):
        """ Stores matrix only if it is aligned row-for-row and column-for-column. """
        if matrix is None:
            self.ric = None
            return False
        if len(matrix) != len(self.rows) or any(len(r) != len(self.columns) for r in matrix):
            logger.warning("Discarding RIC for %s: got %dx%s, expected %dx%d",
                           self.label, len(matrix), {len(r) for r in matrix},
                           len(self.rows), len(self.columns))
            self.ric = None
            return False
        self.ric = [[float(v) for v in r] for r in matrix]
        return True

    def to_dict(self):
        return {
            "id": self.id,
            "label": self.label,
            "columns": list(self.columns),
            "rows": [list(r) for r in self.rows],
            "fds": {
                "original": format_fds(self.fds_original),
                "local": ';'.join(format_local_fd(fd) for fd in self.fds_local),
            },
            "transitiveFDs": list(self.transitive_fds),
            "normalForm": self.normal_form,
            "ricMatrix": self.ric,
            "locked": self.locked,
        }


# --- State machine ---

class DecompositionState:
    """
    Column assignment of one relation group. Editable until a verified decomposition
    is locked; every mutator raises DecompositionLockedError while locked.
    """

    def __init__(self, relation, base_columns=None, fds=None):
        self.relation = relation
        self.base_columns = list(base_columns) if base_columns is not None else relation.columns
        self.fds = list(fds or [])
        self.tables = []
        self.locked = False
        self._next_id = 1

    # -- lookup --

    def get_table(self, table_id):
        for table in self.tables:
            if table.id == table_id:
                return table
        raise UnknownTableError(f"Table {table_id} does not exist")

    def has_table(self, table_id):
        return any(t.id == table_id for t in self.tables)

    def _ensure_editable(self):
        if self.locked:
            raise DecompositionLockedError(
                "The decomposition is locked. Use 'change decomposition' before editing it.")

    def _resolve(self, global_index):
        try:
            idx = int(global_index)
        except (TypeError, ValueError):
            raise ColumnResolutionError(f"Column {global_index!r} is not a column index")
        if idx not in self.base_columns:
            raise ColumnResolutionError(
                f"Column {idx + 1} does not belong to this relation (columns: "
                f"{', '.join(str(c + 1) for c in self.base_columns)})")
        return idx

    def _refresh(self, table):
        dedup = dedupe(self.relation.rows, table.columns)
        table.rows = dedup.unique_tuples
        table.first_global_index = dedup.first_global_index
        cols = set(table.columns)
        table.fds_original = [fd for fd in self.fds if fd.attributes() <= cols]
        table.fds_local = project_fds(table.fds_original, table.columns)
        table.clear_results()

    # -- mutators --

    def add_table(self, columns=None):
        self._ensure_editable()
        resolved = []
        for col in columns or []:
            idx = self._resolve(col)
            if idx not in resolved:
                resolved.append(idx)
        table = DecomposedTable(id=self._next_id, columns=resolved)
        self._next_id += 1
        self._refresh(table)
        self.tables.append(table)
        logger.debug("Added %s with columns %s", table.label, resolved)
        return table

    def remove_table(self, table_id):
        self._ensure_editable()
        table = self.get_table(table_id)
        self.tables.remove(table)
        logger.debug("Removed %s", table.label)
        return table

    def attach_column(self, table_id, global_index, position=None):
        """ onAttach: returns False when the table already holds the column. """
        self._ensure_editable()
        table = self.get_table(table_id)
        idx = self._resolve(global_index)
        if position is not None:
            try:
                position = int(position)
            except (TypeError, ValueError):
                raise ColumnResolutionError(f"Position {position!r} is not an integer")
        if idx in table.columns:
            return False
        if position is None or position >= len(table.columns):
            table.columns.append(idx)
        else:
            table.columns.insert(max(position, 0), idx)
        self._refresh(table)
        return True

    def detach_column(self, table_id, global_index, drop_empty=False):
        """ onDetach: returns True if the emptied table was dropped as well. """
        self._ensure_editable()
        table = self.get_table(table_id)
        try:
            idx = int(global_index)
        except (TypeError, ValueError):
            raise ColumnResolutionError(f"Column {global_index!r} is not a column index")
        if idx not in table.columns:
            raise ColumnResolutionError(f"Column {idx + 1} is not part of {table.label}")
        table.columns.remove(idx)
        if drop_empty and not table.columns:
            self.tables.remove(table)
            return True
        self._refresh(table)
        return False

    def reorder_columns(self, table_id, columns):
        self._ensure_editable()
        table = self.get_table(table_id)
        try:
            new_order = [int(c) for c in columns]
        except (TypeError, ValueError):
            raise ColumnResolutionError(f"Invalid column order {columns!r}")
        if sorted(new_order) != sorted(table.columns) or len(set(new_order)) != len(new_order):
            raise ColumnResolutionError(
                f"New order for {table.label} must be a permutation of its columns")
        table.columns = new_order
        self._refresh(table)

    def set_table_fds(self, table_id, fds):
        """ Replaces the original-form FDs of one table (from a project-fds refresh). """
        table = self.get_table(table_id)
        table.fds_original = list(fds)
        table.fds_local = project_fds(table.fds_original, table.columns)

    # -- lock / unlock --

    def lock(self):
        self.locked = True
        for table in self.tables:
            table.locked = True
        logger.info("Decomposition locked (%d tables)", len(self.tables))

    def unlock(self):
        self.locked = False
        for table in self.tables:
            table.locked = False
            table.clear_results()
        logger.info("Decomposition unlocked")

    # -- validation --

    def coverage(self):
        return check_coverage([t.columns for t in self.tables], self.base_columns)

    def remove_redundant_tables(self):
        """ Drops tables whose columns are a proper subset of another table's. """
        self._ensure_editable()
        indices, warnings = find_redundant_tables([(t.label, t.columns) for t in self.tables])
        for i in reversed(indices):
            logger.warning("Removing redundant table %s", self.tables[i].label)
            del self.tables[i]
        return warnings

    def looks_bcnf(self):
        return looks_bcnf(self.base_columns, self.fds)

    # -- snapshots --

    def snapshot(self):
        return [list(t.columns) for t in self.tables]

    def restore(self, snapshot):
        """
        Rebuilds every table from a snapshot and returns to Editable. Tables get fresh
        ids, so results of jobs started before the restore can no longer be applied.
        """
        self.locked = False
        self.tables = []
        for columns in snapshot:
            try:
                self.add_table(columns)
            except ColumnResolutionError as e:
                logger.warning("Skipping snapshot table %s: %s", columns, e)
        logger.info("Restored decomposition with %d tables", len(self.tables))

    # -- wire payloads --

    def table_payload(self, table):
        return {
            "columns": list(table.columns),
            "manualData": format_manual_data(table.rows),
            "fds": ';'.join(format_local_fd(fd) for fd in table.fds_local),
        }

    def to_dict(self):
        return {
            "baseColumns": list(self.base_columns),
            "fds": format_fds(self.fds),
            "locked": self.locked,
            "tables": [t.to_dict() for t in self.tables],
        }


class SnapshotHistory:
    """ LIFO stack of snapshots (one list of column lists per accepted decomposition). """

    def __init__(self):
        self._stack = []

    def push(self, snapshot):
        self._stack.append([list(cols) for cols in snapshot])

    def pop(self):
        if not self._stack:
            return None
        return self._stack.pop()

    def peek(self):
        return self._stack[-1] if self._stack else None

    def __len__(self):
        return len(self._stack)

    def to_json_list(self):
        return [json.dumps(s) for s in self._stack]

    @classmethod
    def from_json_list(cls, entries):
        history = cls()
        for entry in entries or []:
            try:
                snapshot = json.loads(entry) if isinstance(entry, str) else entry
                if not isinstance(snapshot, list) or \
                        not all(isinstance(cols, list) for cols in snapshot):
                    raise ValueError("snapshot must be a list of column lists")
                history.push([[int(c) for c in cols] for cols in snapshot])
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed snapshot %r: %s", entry, e)
        return history


class RelationGroup:
    """ One base relation (the pseudo table with origin = base) and its decomposition. """

    def __init__(self, group_id, relation, base_columns=None, fds=None, name=None):
        self.id = group_id
        self.name = name or f"R{group_id}"
        self.state = DecompositionState(relation, base_columns, fds)
        self.history = SnapshotHistory()
        self.busy = False
        self.last_result = None
        self.last_messages = []

    @property
    def relation(self):
        return self.state.relation

    @property
    def base_columns(self):
        return self.state.base_columns

    @property
    def nested(self):
        """ True when the base spans only part of the relation (a later stage). """
        return self.state.base_columns != self.state.relation.columns

    def base_table(self):
        dedup = dedupe(self.relation.rows, self.base_columns)
        return {
            "origin": "base",
            "columns": list(self.base_columns),
            "rows": dedup.unique_tuples,
            "fds": format_fds(self.state.fds),
        }

    def to_dict(self):
        data = {
            "id": self.id,
            "name": self.name,
            "base": self.base_table(),
            "busy": self.busy,
            "history": len(self.history),
            "alreadyBcnf": self.state.looks_bcnf(),
            "messages": list(self.last_messages),
        }
        data.update(self.state.to_dict())
        if self.last_result is not None:
            data["result"] = self.last_result
        return data
