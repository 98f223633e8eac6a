import json
import threading

import pytest

from conftest import FakeResponse, sse_lines, projecting
from workbench.decomposition_service import (DecompositionService, Workspace, JobInProgressError,
                                             UnknownGroupError, COMPLETED_MESSAGE)
from workbench.decomposition_state import DecompositionLockedError, CoverageError
from workbench.normalization_utils import FunctionalDependency as FD
from workbench.session_stats import SessionStats

ROWS = [
    ['1', 'a', 'x'],
    ['2', 'a', 'x'],
    ['3', 'b', 'y'],
]
FDS = ["1->2", "2->3"]

LOSSLESS = {
    "ljPreserved": True,
    "dpPreserved": True,
    "tableResults": [
        {"ricMatrix": [[1, 1], [1, 1], [1, 1]], "projectedFDs": ["1->2"], "normalForm": "BCNF"},
        {"ricMatrix": [[1, 1], [1, 1]], "projectedFDs": ["2->3"], "transitiveFDs": []},
    ],
    "bcnfdecomposition": False,
}


def build(fake_session, solver, tables=([0, 1], [1, 2])):
    fake_session.on('project-fds', projecting(FDS))
    service = DecompositionService(Workspace(), solver)
    group = service.load_relation(rows=ROWS, fds=';'.join(FDS))
    for columns in tables:
        service.add_table(group.id, list(columns))
    return service, group


def lock(service, group, fake_session, body=None):
    fake_session.on('decompose-all', FakeResponse(200, body or LOSSLESS))
    return service.check_decomposition(group.id)


class TestLoading:
    def test_load_relation(self, fake_session, solver):
        service, group = build(fake_session, solver, tables=())
        assert group.relation.width == 3
        assert group.state.fds == [FD((0,), (1,)), FD((1,), (2,))]
        assert service.workspace.get_group(group.id) is group

    def test_fd_outside_relation(self, solver):
        service = DecompositionService(Workspace(), solver)
        with pytest.raises(ValueError):
            service.load_relation(manual_data="1,2;3,4", fds="1->5")

    def test_unknown_group(self, solver):
        service = DecompositionService(Workspace(), solver)
        with pytest.raises(UnknownGroupError):
            service.add_table(42)

    def test_project_fds_failure_leaves_fds_empty(self, fake_session, solver):
        service = DecompositionService(Workspace(), solver)
        group = service.load_relation(rows=ROWS, fds=';'.join(FDS))
        fake_session.on('project-fds', FakeResponse(500, {"error": "down"}))
        table = service.add_table(group.id, [0, 1])
        assert table.fds_original == []
        assert table.fds_local == []


class TestCheck:
    def test_lossless_decomposition_locks(self, fake_session, solver):
        service, group = build(fake_session, solver)
        result = lock(service, group, fake_session)
        assert result["status"] == "locked"
        assert group.state.locked is True
        assert len(group.history) == 1
        assert group.history.peek() == [[0, 1], [1, 2]]
        t1, t2 = group.state.tables
        assert t1.normal_form == "BCNF"
        assert t1.fds_original == [FD((0,), (1,))]
        assert t2.fds_original == [FD((1,), (2,))]
        assert t1.ric == [[1.0, 1.0]] * 3
        assert service.workspace.stats.attempts == 1

    def test_result_fds_are_globally_numbered(self, fake_session, solver):
        service, group = build(fake_session, solver, tables=([1, 0], [1, 2]))
        lock(service, group, fake_session)
        t1, t2 = group.state.tables
        assert t1.fds_original == [FD((0,), (1,))]
        assert t1.fds_local == [FD((2,), (1,))]
        assert t2.fds_original == [FD((1,), (2,))]
        assert t2.fds_local == [FD((1,), (2,))]

    def test_result_fds_outside_table_are_dropped(self, fake_session, solver):
        service, group = build(fake_session, solver)
        body = dict(LOSSLESS, tableResults=[
            {"ricMatrix": [[1, 1], [1, 1], [1, 1]], "projectedFDs": ["1->2", "2->3"]},
            {"ricMatrix": [[1, 1], [1, 1]]},
        ])
        lock(service, group, fake_session, body)
        assert group.state.tables[0].fds_original == [FD((0,), (1,))]

    def test_payload_uses_local_fds(self, fake_session, solver):
        service, group = build(fake_session, solver)
        lock(service, group, fake_session)
        _, endpoint, body = fake_session.calls[-1]
        assert endpoint == 'decompose-all'
        assert body["fds"] == "1->2;2->3"
        assert body["tables"][0] == {"columns": [0, 1], "manualData": "1,a;2,a;3,b", "fds": "1->2"}
        assert body["tables"][1] == {"columns": [1, 2], "manualData": "a,x;b,y", "fds": "1->2"}
        assert "baseColumns" not in body

    def test_missing_columns(self, fake_session, solver):
        service, group = build(fake_session, solver, tables=([0, 1],))
        result = service.check_decomposition(group.id)
        assert result["status"] == "incomplete"
        assert result["missing"] == [2]
        assert group.state.locked is False
        assert 'decompose-all' not in fake_session.endpoints()

    def test_redundant_table_removed_and_check_stops(self, fake_session, solver):
        service, group = build(fake_session, solver, tables=([0, 1], [0, 1, 2]))
        result = service.check_decomposition(group.id)
        assert result["status"] == "redundant"
        assert "T1 (columns: 1, 2) is a subset of T2" in result["messages"][0]
        assert [t.columns for t in group.state.tables] == [[0, 1, 2]]
        assert 'decompose-all' not in fake_session.endpoints()

    def test_lossy_keeps_editable(self, fake_session, solver):
        service, group = build(fake_session, solver, tables=([0, 2], [1, 2]))
        result = lock(service, group, fake_session, {
            "ljPreserved": False,
            "dpPreserved": False,
            "missingFDs": ["1->2"],
            "ljDetails": {"explanation": "No common attribute is a key."},
        })
        assert result["status"] == "lossy"
        assert result["messages"] == ["No common attribute is a key."]
        assert result["missingFDs"] == ["1->2"]
        assert group.state.locked is False
        assert len(group.history) == 0

    def test_check_when_locked(self, fake_session, solver):
        service, group = build(fake_session, solver)
        lock(service, group, fake_session)
        with pytest.raises(DecompositionLockedError):
            service.check_decomposition(group.id)

    def test_in_progress_guard(self, fake_session, solver):
        service, group = build(fake_session, solver)
        group.busy = True
        with pytest.raises(JobInProgressError):
            service.check_decomposition(group.id)
        with pytest.raises(JobInProgressError):
            service.attach_column(group.id, group.state.tables[0].id, 2)

    def test_group_busy_during_projection_refresh(self, fake_session, solver):
        service, group = build(fake_session, solver, tables=())
        rejected = []

        def project(body):
            with pytest.raises(JobInProgressError):
                service.check_decomposition(group.id)
            rejected.append(body["columns"])
            return projecting(FDS)(body)

        fake_session.on('project-fds', project)
        table = service.add_table(group.id, [0, 1])
        assert rejected == [[0, 1]]
        assert table.fds_original == [FD((0,), (1,))]
        assert group.busy is False

    def test_stale_projection_is_ignored(self, fake_session, solver):
        service, group = build(fake_session, solver, tables=())

        def project(body):
            group.state.tables[-1].columns.append(2)
            return FakeResponse(200, {"projectedFDs": []})

        fake_session.on('project-fds', project)
        table = service.add_table(group.id, [0, 1])
        assert table.fds_original == [FD((0,), (1,))]

    def test_projection_after_lock_is_ignored(self, fake_session, solver):
        service, group = build(fake_session, solver, tables=())

        def project(body):
            group.state.lock()
            return FakeResponse(200, {"projectedFDs": []})

        fake_session.on('project-fds', project)
        table = service.add_table(group.id, [0, 1])
        assert table.fds_original == [FD((0,), (1,))]

    def test_claim_is_exclusive_across_threads(self, fake_session, solver):
        service, group = build(fake_session, solver)
        outcomes = []

        def claim():
            try:
                service.workspace.claim(group.id)
                outcomes.append("claimed")
            except JobInProgressError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert sorted(outcomes) == ["claimed"] + ["rejected"] * 7

    def test_solver_failure_resets_busy(self, fake_session, solver):
        service, group = build(fake_session, solver)
        fake_session.on('decompose-all', FakeResponse(500, {"error": "boom"}))
        with pytest.raises(ConnectionError):
            service.check_decomposition(group.id)
        assert group.busy is False
        assert group.state.locked is False

    def test_bcnf_freezes_stats(self, fake_session, solver):
        service, group = build(fake_session, solver)
        lock(service, group, fake_session, dict(LOSSLESS, bcnfdecomposition=True))
        stats = service.workspace.stats
        assert stats.bcnf_summary["attempts"] == 1
        assert stats.bcnf_summary["tableCount"] == 2
        assert stats.bcnf_summary["dependencyPreserved"] is True
        assert stats.attempts == 0

    def test_bcnf_summary_survives_later_computation(self, fake_session, solver):
        service, group = build(fake_session, solver)
        now = [1000.0]
        service.workspace.stats = SessionStats(clock=lambda: now[0])
        lock(service, group, fake_session)
        service.change_decomposition(group.id)
        now[0] += 45
        lock(service, group, fake_session, dict(LOSSLESS, bcnfdecomposition=True))
        expected = {"attempts": 2, "elapsedTime": 45, "tableCount": 2, "dependencyPreserved": True}
        assert service.workspace.stats.bcnf_summary == expected

        now[0] += 30
        events = [("complete", {"status": "done", "payload": dict(LOSSLESS, bcnfdecomposition=True)})]
        fake_session.on('decompose-stream/start', FakeResponse(200, {"token": "job-3"}))
        fake_session.on('decompose-stream', FakeResponse(200, lines=sse_lines(*events)))
        assert service.run_computation(group.id)["bcnf"] is True
        assert service.workspace.stats.bcnf_summary == expected


class TestChange:
    def test_change_unlocks_and_counts_attempt(self, fake_session, solver):
        service, group = build(fake_session, solver)
        lock(service, group, fake_session)
        assert service.change_decomposition(group.id) is True
        assert group.state.locked is False
        assert all(t.ric is None for t in group.state.tables)
        assert service.workspace.stats.attempts == 2

    def test_change_when_editable_is_noop(self, fake_session, solver):
        service, group = build(fake_session, solver)
        assert service.change_decomposition(group.id) is False


class TestComputation:
    def start(self, service, group, fake_session, events):
        fake_session.on('decompose-stream/start', FakeResponse(200, {"token": "job-1"}))
        fake_session.on('decompose-stream', FakeResponse(200, lines=sse_lines(*events)))
        return service.start_computation(group.id)

    def test_events_and_sequential_recompute(self, fake_session, solver):
        service, group = build(fake_session, solver)
        fake_session.on('decompose', FakeResponse(200, {"ric": [[1, 1], [0.5, 1]],
                                                        "projectedFDs": ["2->3"]}))
        _, job = self.start(service, group, fake_session, [
            ("progress", {"message": "T1: Starting computations."}),
            ("complete", {"status": "done", "payload": {
                "ljPreserved": True, "dpPreserved": True,
                "tableResults": [{"ricMatrix": [[1, 1], [1, 0.5], [1, 1]]}, {}],
            }}),
        ])
        events = list(service.stream_computation(group, job))
        assert [e for e, _ in events] == ['progress', 'progress', 'complete']
        assert events[0][1] == {"message": "T1: Starting computations."}
        assert events[1][1] == {"message": COMPLETED_MESSAGE}
        t1, t2 = group.state.tables
        assert t1.ric[1] == [1.0, 0.5]
        assert t2.ric == [[1.0, 1.0], [0.5, 1.0]]
        assert t2.fds_original == [FD((1,), (2,))]
        assert fake_session.endpoints()[-3:] == ['decompose-stream/start', 'decompose-stream', 'decompose']
        assert group.busy is False

    def test_global_ric_mapped_onto_unique_rows(self, fake_session, solver):
        service, group = build(fake_session, solver)
        _, job = self.start(service, group, fake_session, [
            ("complete", {"status": "done", "payload": {
                "ljPreserved": True,
                "globalRic": [[1, 0.5, 0.25], [1, 0.5, 0.25], [0.75, 1, 1]],
                "unionCols": [0, 1, 2],
                "tableResults": [],
            }}),
        ])
        list(service.stream_computation(group, job))
        t1, t2 = group.state.tables
        assert t1.ric == [[1.0, 0.5], [1.0, 0.5], [0.75, 1.0]]
        assert t2.ric == [[0.5, 0.25], [1.0, 1.0]]
        assert 'decompose' not in fake_session.endpoints()

    def test_abandoned_group_ignores_results(self, fake_session, solver):
        service, group = build(fake_session, solver)
        _, job = self.start(service, group, fake_session, [
            ("progress", {"message": "a"}),
            ("complete", {"status": "done", "payload": {"ljPreserved": True, "tableResults": [
                {"ricMatrix": [[1, 1], [1, 1], [1, 1]]}, {}]}}),
        ])
        events = service.stream_computation(group, job)
        assert next(events) == ('progress', {"message": "a"})
        service.load_relation(rows=[['9', '9']], fds='')
        rest = list(events)
        assert rest[-1][0] == 'stream-error'
        assert group.state.tables[0].ric is None
        assert 'decompose' not in fake_session.endpoints()

    def test_stream_error_applies_nothing(self, fake_session, solver):
        service, group = build(fake_session, solver)
        _, job = self.start(service, group, fake_session, [
            ("progress", {"message": "a"}),
            ("stream-error", {"message": "Stream token is invalid or expired."}),
        ])
        events = list(service.stream_computation(group, job))
        assert events[-1] == ('stream-error', {"message": "Stream token is invalid or expired."})
        assert all(t.ric is None for t in group.state.tables)
        assert group.busy is False

    def test_second_job_rejected_while_running(self, fake_session, solver):
        service, group = build(fake_session, solver)
        self.start(service, group, fake_session, [])
        with pytest.raises(JobInProgressError):
            service.start_computation(group.id)

    def test_requires_coverage(self, fake_session, solver):
        service, group = build(fake_session, solver, tables=([0],))
        with pytest.raises(CoverageError):
            service.start_computation(group.id)
        assert group.busy is False

    def test_run_computation(self, fake_session, solver):
        service, group = build(fake_session, solver)
        fake_session.on('decompose', FakeResponse(200, {"ric": [[1, 1], [1, 1]]}))
        events = [("complete", {"status": "done", "payload": {
            "ljPreserved": True, "bcnfdecomposition": True, "dpPreserved": True,
            "tableResults": [{"ricMatrix": [[1, 1], [1, 1], [1, 1]]}, {}]}})]
        fake_session.on('decompose-stream/start', FakeResponse(200, {"token": "job-2"}))
        fake_session.on('decompose-stream', FakeResponse(200, lines=sse_lines(*events)))
        summary = service.run_computation(group.id)
        assert summary["bcnf"] is True
        assert len(summary["tables"]) == 2
        assert service.workspace.stats.bcnf_summary["tableCount"] == 2


class TestUndo:
    def test_undo_restores_editable(self, fake_session, solver):
        service, group = build(fake_session, solver)
        lock(service, group, fake_session)
        fake_session.on('undo', FakeResponse(200, []))
        result = service.undo(group.id)
        assert result == {"restored": True, "history": []}
        assert group.state.locked is False
        assert group.state.snapshot() == [[0, 1], [1, 2]]
        assert all(t.ric is None and t.normal_form is None for t in group.state.tables)
        assert 'undo' in fake_session.endpoints()

    def test_undo_on_empty_history(self, fake_session, solver):
        service, group = build(fake_session, solver)
        result = service.undo(group.id)
        assert result["restored"] is False
        assert result["message"] == "Nothing to restore."

    def test_remote_undo_failure_is_not_fatal(self, fake_session, solver):
        service, group = build(fake_session, solver)
        lock(service, group, fake_session)
        result = service.undo(group.id)
        assert result["restored"] is True


class TestStages:
    def test_continue_and_previous(self, fake_session, solver):
        service, group = build(fake_session, solver)
        lock(service, group, fake_session)
        fake_session.on('continue', FakeResponse(302, headers={"Location": "/normalization"}))
        result = service.continue_normalization()
        assert result == {"redirectUrl": "/normalization", "stage": 2}

        payload = fake_session.calls[-1][2]
        assert payload["columnsPerTable"] == [[0, 1], [1, 2]]
        assert payload["fdsPerTableOriginal"] == ["1->2", "2->3"]
        assert payload["originalTable"] == "1,a,x;2,a,x;3,b,y"

        groups = list(service.workspace.groups.values())
        assert [g.base_columns for g in groups] == [[0, 1], [1, 2]]
        assert groups[1].relation.rows == (('', 'a', 'x'), ('', 'b', 'y'))
        assert groups[1].state.fds == [FD((1,), (2,))]
        assert all(g.nested for g in groups)

        service.previous_stage()
        assert list(service.workspace.groups.values()) == [group]
        assert service.workspace.stage == 1

    def test_continue_requires_a_locked_group(self, fake_session, solver):
        service, group = build(fake_session, solver)
        with pytest.raises(ValueError):
            service.continue_normalization()

    def test_continue_blocked_while_group_busy(self, fake_session, solver):
        service, group = build(fake_session, solver)
        lock(service, group, fake_session)
        group.busy = True
        with pytest.raises(JobInProgressError):
            service.continue_normalization()
        assert service.workspace.stage == 1
        assert 'continue' not in fake_session.endpoints()

    def test_previous_without_history(self, fake_session, solver):
        service, group = build(fake_session, solver)
        with pytest.raises(ValueError):
            service.previous_stage()

    def test_nested_group_sends_base_columns(self, fake_session, solver):
        service, group = build(fake_session, solver)
        lock(service, group, fake_session)
        fake_session.on('continue', FakeResponse(200, {"redirectUrl": "/normalization"}))
        service.continue_normalization()
        nested = list(service.workspace.groups.values())[1]
        service.add_table(nested.id, [1, 2])
        lock(service, nested, fake_session, {"ljPreserved": True, "dpPreserved": True})
        body = fake_session.calls[-1][2]
        assert body["baseColumns"] == [1, 2]

    def test_bcnf_review(self, fake_session, solver):
        service, group = build(fake_session, solver)
        lock(service, group, fake_session, dict(LOSSLESS, bcnfdecomposition=True))
        fake_session.on('bcnf-review', FakeResponse(200, {"redirectUrl": "/bcnf-summary"}))
        assert service.bcnf_review() == {"redirectUrl": "/bcnf-summary"}
        body = fake_session.calls[-1][2]
        assert body["attempts"] == 1
        assert "elapsedTime" in body
        assert json.dumps(body)
