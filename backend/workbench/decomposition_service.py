import logging
import threading
from collections import OrderedDict
from contextlib import contextmanager

from .decomposition_state import (GlobalRelation, RelationGroup, CoverageError,
                                  DecompositionLockedError)
from .helpers import DedupResult, coverage_message, format_manual_data
from .normalization_utils import (parse_fds, project_fd, project_fds, format_fds,
                                  format_local_fd, project_ric)
from .session_stats import SessionStats
from .solver_client import SolverError, StreamFailedError, StreamingComputationClient

logger = logging.getLogger(__name__)

COMPLETED_MESSAGE = "Normalization completed."


class JobInProgressError(RuntimeError):
    pass


class UnknownGroupError(LookupError):
    pass


class Workspace:
    """ Relation groups of the current normalization stage plus the stages before it. """

    def __init__(self):
        self.groups = {}
        self.previous_stages = []
        self.stats = SessionStats()
        self._next_group_id = 1
        # guards the busy flags; held only for the test-and-set, never across solver calls
        self.lock = threading.Lock()

    def new_group(self, relation, base_columns=None, fds=None, name=None):
        group = RelationGroup(self._next_group_id, relation, base_columns, fds, name)
        self._next_group_id += 1
        self.groups[group.id] = group
        return group

    def get_group(self, group_id):
        group = self.groups.get(group_id)
        if group is None:
            raise UnknownGroupError(f"Relation group {group_id} does not exist")
        return group

    def owns(self, group):
        return self.groups.get(group.id) is group

    def claim(self, group_id):
        """ Marks a group busy, atomically. Raises JobInProgressError if it already is. """
        with self.lock:
            group = self.get_group(group_id)
            if group.busy:
                raise JobInProgressError(f"An operation is already running for {group.name}")
            group.busy = True
            return group

    def claim_all(self):
        with self.lock:
            groups = list(self.groups.values())
            if any(g.busy for g in groups):
                raise JobInProgressError("A computation is still running")
            for group in groups:
                group.busy = True
            return groups

    @staticmethod
    def release(groups):
        for group in groups:
            group.busy = False

    @property
    def stage(self):
        return len(self.previous_stages) + 1

    def to_dict(self):
        return {
            "stage": self.stage,
            "groups": [g.to_dict() for g in self.groups.values()],
            "stats": self.stats.to_dict(),
        }


class WorkspaceRegistry:
    """ Workspaces by session id, least recently used evicted beyond `limit`. """

    def __init__(self, limit=256):
        self.limit = max(int(limit), 1)
        self._workspaces = OrderedDict()
        self._lock = threading.Lock()

    def get(self, workspace_id):
        """ Returns the workspace, creating it when missing or evicted. """
        with self._lock:
            workspace = self._workspaces.get(workspace_id)
            if workspace is None:
                workspace = self._workspaces[workspace_id] = Workspace()
            self._workspaces.move_to_end(workspace_id)
            while len(self._workspaces) > self.limit:
                evicted, _ = self._workspaces.popitem(last=False)
                logger.info("Evicted workspace %s", evicted)
            return workspace

    def __contains__(self, workspace_id):
        return workspace_id in self._workspaces

    def __len__(self):
        return len(self._workspaces)


class DecompositionService:
    """
    Drives one workspace: column edits, the check (lock) round-trip, the streamed RIC
    computation, undo, and moving between normalization stages.
    """

    def __init__(self, workspace, solver, confirm=None):
        self.workspace = workspace
        self.solver = solver
        self.streaming = StreamingComputationClient(solver)
        self.confirm = confirm

    # --- loading ---

    def load_relation(self, rows=None, manual_data=None, fds='', name=None):
        if rows is not None:
            relation = GlobalRelation(rows)
        else:
            relation = GlobalRelation.from_manual_data(manual_data)
        if not relation.width or not len(relation):
            raise ValueError("The relation has no rows")
        parsed = parse_fds(fds)
        out_of_range = [fd for fd in parsed if max(fd.attributes()) >= relation.width]
        if out_of_range:
            raise ValueError(f"FD {format_fds(out_of_range)} references a column outside "
                             f"1..{relation.width}")
        self.workspace.groups = {}
        self.workspace.previous_stages = []
        self.workspace.stats.reset()
        group = self.workspace.new_group(relation, fds=parsed, name=name)
        logger.info("Loaded relation %s: %d rows x %d columns, %d FDs",
                    group.name, len(relation), relation.width, len(parsed))
        return group

    # --- column edits ---

    @contextmanager
    def _operation(self, group_id):
        """ Holds the group's busy flag for the whole operation, solver calls included. """
        group = self.workspace.claim(group_id)
        try:
            yield group
        finally:
            Workspace.release([group])

    def add_table(self, group_id, columns=None):
        with self._operation(group_id) as group:
            table = group.state.add_table(columns)
            self.refresh_projected_fds(group, table)
            return table

    def remove_table(self, group_id, table_id):
        with self._operation(group_id) as group:
            return group.state.remove_table(table_id)

    def attach_column(self, group_id, table_id, global_index, position=None):
        with self._operation(group_id) as group:
            changed = group.state.attach_column(table_id, global_index, position)
            if changed:
                self.refresh_projected_fds(group, group.state.get_table(table_id))
            return changed

    def detach_column(self, group_id, table_id, global_index, drop_empty=False):
        with self._operation(group_id) as group:
            dropped = group.state.detach_column(table_id, global_index, drop_empty)
            if not dropped:
                self.refresh_projected_fds(group, group.state.get_table(table_id))
            return dropped

    def reorder_columns(self, group_id, table_id, columns):
        with self._operation(group_id) as group:
            group.state.reorder_columns(table_id, columns)
            self.refresh_projected_fds(group, group.state.get_table(table_id))

    def refresh_projected_fds(self, group, table):
        """
        Replaces the table's FDs with the solver's projection onto its columns. The
        answer is dropped if the table was removed, changed or locked meanwhile.
        """
        columns = list(table.columns)
        if not columns:
            group.state.set_table_fds(table.id, [])
            return
        try:
            projected = parse_fds(self.solver.project_fds(columns))
        except SolverError as e:
            logger.warning("project-fds failed for %s: %s", table.label, e.message)
            projected = []
        state = group.state
        if state.locked or not state.has_table(table.id) or \
                state.get_table(table.id).columns != columns:
            logger.info("Ignoring stale project-fds result for %s", table.label)
            return
        state.set_table_fds(table.id, projected)

    # --- check / lock ---

    def decompose_all_payload(self, group):
        state = group.state
        return self.solver.decompose_all_payload(
            [state.table_payload(t) for t in state.tables],
            format_fds(state.fds),
            base_columns=group.base_columns if group.nested else None,
            manual_data=group.relation.to_manual_data(),
        )

    def check_decomposition(self, group_id):
        """
        Redundant-table sweep, coverage, then the solver's lossless-join verdict.
        Locks and records a snapshot only when the decomposition is lossless.
        """
        with self._operation(group_id) as group:
            return self._check(group)

    def _check(self, group):
        state = group.state
        if state.locked:
            raise DecompositionLockedError("The decomposition is already locked")
        self.workspace.stats.start()

        warnings = state.remove_redundant_tables()
        if warnings:
            group.last_messages = warnings
            if not state.tables:
                return {"status": "empty", "messages": warnings + ["No valid tables remain."]}
            return {"status": "redundant", "messages": warnings}
        if not state.tables:
            group.last_messages = ["No valid tables to check."]
            return {"status": "empty", "messages": group.last_messages}

        coverage = state.coverage()
        if not coverage.valid:
            group.last_messages = [coverage_message(coverage)]
            return {"status": "incomplete", "missing": coverage.missing,
                    "messages": group.last_messages}

        response = self.solver.decompose_all(self.decompose_all_payload(group))
        if not self.workspace.owns(group):
            logger.info("Group %s was removed while checking, result ignored", group.id)
            return {"status": "abandoned", "messages": []}
        group.last_result = response.to_json()

        if not response.lj_preserved:
            group.last_messages = [response.lj_explanation or
                                   "The decomposition is not lossless-join."]
            return {"status": "lossy", "messages": group.last_messages,
                    "missingFDs": response.missing_fds, "dpPreserved": response.dp_preserved}

        group.history.push(state.snapshot())
        state.lock()
        self._apply_table_results(group, list(state.tables), response)
        group.last_messages = [coverage_message(coverage)]
        if not response.dp_preserved and response.missing_fds:
            group.last_messages.append("Dependencies not preserved: " +
                                       ', '.join(response.missing_fds))
        if response.bcnf:
            self._record_bcnf(len(state.tables), response.dp_preserved)
        return {"status": "locked", "messages": group.last_messages,
                "dpPreserved": response.dp_preserved, "missingFDs": response.missing_fds,
                "bcnf": response.bcnf}

    def change_decomposition(self, group_id):
        with self._operation(group_id) as group:
            if not group.state.locked:
                return False
            group.state.unlock()
            self.workspace.stats.record_attempt()
            group.last_messages = []
            return True

    def _record_bcnf(self, table_count, dependency_preserved):
        # one summary per session: a compute after the BCNF check must not refreeze it
        stats = self.workspace.stats
        if stats.running or stats.bcnf_summary is None:
            stats.finish(table_count, dependency_preserved)

    # --- RIC computation ---

    def start_computation(self, group_id):
        """ Runs the guards and obtains the job token. Streaming happens in stream_computation. """
        group = self.workspace.claim(group_id)
        try:
            state = group.state
            if not state.tables:
                raise ValueError("There are no decomposed tables to compute")
            coverage = state.coverage()
            if not coverage.valid:
                raise CoverageError(coverage)
            job = self.streaming.start(self.decompose_all_payload(group))
        except Exception:
            group.busy = False
            raise
        logger.info("Started job %s for %s", job.token, group.name)
        return group, job

    def stream_computation(self, group, job):
        """
        Generator of (event, data) pairs for the browser: progress in arrival order, then
        complete or stream-error. Results are applied only if the group still exists.
        """
        try:
            try:
                for message in self.streaming.stream(job):
                    yield 'progress', {"message": message}
            except StreamFailedError as e:
                yield 'stream-error', {"message": e.message}
                return
            yield 'progress', {"message": COMPLETED_MESSAGE}
            if self.confirm is not None:
                self.confirm(job)
            summary = self.apply_computation(group, job.result)
            if summary is None:
                yield 'stream-error', {"message": "The relation was removed before the results arrived."}
                return
            yield 'complete', {"status": "done", "payload": summary}
        finally:
            group.busy = False

    def run_computation(self, group_id):
        """ Non-streaming variant: returns the summary or raises StreamFailedError. """
        group, job = self.start_computation(group_id)
        summary = None
        for event, data in self.stream_computation(group, job):
            if event == 'stream-error':
                raise StreamFailedError(data["message"], job.progress_log)
            if event == 'complete':
                summary = data["payload"]
        return summary

    def apply_computation(self, group, response):
        if not self.workspace.owns(group):
            logger.info("Group %s was removed during the computation, result ignored", group.id)
            return None
        state = group.state
        tables = list(state.tables)
        group.last_result = response.to_json()
        self._apply_table_results(group, tables, response)

        # per-table recompute, one at a time, for tables still without a RIC
        for table in tables:
            if not state.has_table(table.id) or table.ric is not None:
                continue
            try:
                result = self.solver.decompose(state.table_payload(table),
                                               group.base_columns if group.nested else None)
            except SolverError as e:
                logger.warning("decompose failed for %s: %s", table.label, e.message)
                continue
            if not self.workspace.owns(group) or not state.has_table(table.id):
                logger.info("%s was removed during recompute, result ignored", table.label)
                continue
            self._annotate(group, table, result, None)

        if response.bcnf:
            self._record_bcnf(len(tables), response.dp_preserved)
        return {
            "ljPreserved": response.lj_preserved,
            "dpPreserved": response.dp_preserved,
            "bcnf": response.bcnf,
            "missingFDs": response.missing_fds,
            "tables": [t.to_dict() for t in tables if state.has_table(t.id)],
        }

    def _apply_table_results(self, group, tables, response):
        if response.table_results and len(response.table_results) != len(tables):
            logger.warning("Got %d table results for %d tables",
                           len(response.table_results), len(tables))
        for index, table in enumerate(tables):
            if not group.state.has_table(table.id):
                continue
            result = response.table_results[index] if index < len(response.table_results) else None
            self._annotate(group, table, result, response)

    def _annotate(self, group, table, result, response):
        if result is not None:
            if result.projected_fds:
                # global 1-based strings, same numbering as project-fds
                fitting = []
                for fd in parse_fds(result.projected_fds):
                    if project_fd(fd, table.columns) is None:
                        logger.warning("FD %s does not fit %s", format_fds([fd]), table.label)
                        continue
                    fitting.append(fd)
                table.fds_original = fitting
                table.fds_local = project_fds(fitting, table.columns)
            table.transitive_fds = list(result.transitive_fds)
            table.normal_form = result.normal_form
            if table.set_ric(result.ric):
                return
        if response is not None and response.global_ric:
            dedup = DedupResult(table.rows, table.first_global_index)
            table.set_ric(project_ric(response.global_ric, response.union_cols,
                                      group.relation.rows, table.columns, dedup))

    # --- undo ---

    def undo(self, group_id):
        with self._operation(group_id) as group:
            snapshot = group.history.pop()
            if snapshot is None:
                return {"restored": False, "message": "Nothing to restore.", "history": []}
            group.state.restore(snapshot)
            for table in list(group.state.tables):
                self.refresh_projected_fds(group, table)
            group.last_result = None
            group.last_messages = []
            try:
                self.solver.undo()
            except SolverError as e:
                logger.warning("Remote undo failed: %s", e.message)
            logger.info("Undo on %s, %d snapshots left", group.name, len(group.history))
            return {"restored": True, "history": group.history.to_json_list()}

    # --- stages ---

    def serialize_stage(self):
        data = {
            "columnsPerTable": [],
            "manualPerTable": [],
            "fdsPerTable": [],
            "fdsPerTableOriginal": [],
            "ricPerTable": [],
            "globalRic": None,
            "unionCols": [],
            "originalTable": None,
            "originalRic": None,
        }
        for group in self.workspace.groups.values():
            for table in group.state.tables:
                data["columnsPerTable"].append(list(table.columns))
                data["manualPerTable"].append(format_manual_data(table.rows))
                data["fdsPerTable"].append(';'.join(format_local_fd(fd) for fd in table.fds_local))
                data["fdsPerTableOriginal"].append(format_fds(table.fds_original))
                data["ricPerTable"].append(table.ric)
            if data["originalTable"] is None:
                data["originalTable"] = group.relation.to_manual_data()
            if data["globalRic"] is None and group.last_result:
                data["globalRic"] = group.last_result.get("globalRic")
                data["unionCols"] = group.last_result.get("unionCols") or []
        return data

    def continue_normalization(self):
        """
        Every table of every locked group becomes the base of a new group. Groups that
        were never locked move to the next stage unchanged.
        """
        claimed = self.workspace.claim_all()
        try:
            return self._continue()
        finally:
            Workspace.release(claimed)

    def _continue(self):
        if not any(g.state.locked for g in self.workspace.groups.values()):
            raise ValueError("Lock at least one decomposition before continuing")
        redirect_url = self.solver.continue_normalization(self.serialize_stage())

        current = self.workspace.groups
        self.workspace.previous_stages.append(current)
        self.workspace.groups = {}
        for group in current.values():
            if not group.state.locked:
                self.workspace.groups[group.id] = group
                continue
            for table in group.state.tables:
                relation = group.relation.derive(table.columns, table.rows)
                self.workspace.new_group(relation, table.columns, table.fds_original,
                                         name=f"{group.name}.{table.label}")
        logger.info("Moved to stage %d with %d groups", self.workspace.stage,
                    len(self.workspace.groups))
        return {"redirectUrl": redirect_url, "stage": self.workspace.stage}

    def previous_stage(self):
        claimed = self.workspace.claim_all()
        try:
            if not self.workspace.previous_stages:
                raise ValueError("There is no previous normalization stage")
            self.workspace.groups = self.workspace.previous_stages.pop()
        finally:
            Workspace.release(claimed)
        logger.info("Back to stage %d", self.workspace.stage)
        return {"stage": self.workspace.stage}

    def bcnf_review(self):
        stats = self.workspace.stats
        summary = stats.bcnf_summary or {"attempts": stats.attempts,
                                         "elapsedTime": stats.elapsed_seconds()}
        payload = self.serialize_stage()
        payload["attempts"] = summary["attempts"]
        payload["elapsedTime"] = summary["elapsedTime"]
        return {"redirectUrl": self.solver.bcnf_review(payload)}
