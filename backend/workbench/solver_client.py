import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'http://localhost:8080/normalize'


class SolverError(ConnectionError):
    """ The solver rejected a request or could not be reached. """

    def __init__(self, message, status=None):
        super().__init__(message)
        self.message = message
        self.status = status


class StreamFailedError(ConnectionError):
    """ The progress stream reported stream-error or dropped before complete. """

    def __init__(self, message, progress_log=None):
        super().__init__(message)
        self.message = message
        self.progress_log = list(progress_log or [])


# --- Wire schemas (parsed once, here) ---

def _parse_matrix(value, what):
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            logger.warning("Unparsable %s: %r", what, value[:80])
            return None
    try:
        return [[float(cell) for cell in row] for row in value]
    except (TypeError, ValueError):
        logger.warning("Malformed %s discarded", what)
        return None


def _parse_strings(value):
    if not value:
        return []
    if isinstance(value, str):
        return [s.strip() for s in value.split(';') if s.strip()]
    return [str(s) for s in value if str(s).strip()]


@dataclass
class TableResult:
    """ Result for one table: a decompose response or one entry of tableResults. """
    ric: Optional[list] = None
    projected_fds: List[str] = field(default_factory=list)
    transitive_fds: List[str] = field(default_factory=list)
    normal_form: Optional[str] = None
    dp_preserved: Optional[bool] = None
    lj_preserved: Optional[bool] = None

    @classmethod
    def from_json(cls, data):
        data = data or {}
        ric = data.get('ricMatrix') if data.get('ricMatrix') is not None else data.get('ric')
        return cls(
            ric=_parse_matrix(ric, 'RIC matrix'),
            projected_fds=_parse_strings(data.get('projectedFDs')),
            transitive_fds=_parse_strings(data.get('transitiveFDs')),
            normal_form=data.get('normalForm'),
            dp_preserved=data.get('dpPreserved'),
            lj_preserved=data.get('ljPreserved'),
        )

    def to_json(self):
        return {
            "ricMatrix": self.ric,
            "projectedFDs": list(self.projected_fds),
            "transitiveFDs": list(self.transitive_fds),
            "normalForm": self.normal_form,
            "dpPreserved": self.dp_preserved,
            "ljPreserved": self.lj_preserved,
        }


@dataclass
class DecomposeAllResponse:
    lj_preserved: bool = False
    dp_preserved: bool = False
    global_ric: Optional[list] = None
    union_cols: List[int] = field(default_factory=list)
    table_results: List[TableResult] = field(default_factory=list)
    bcnf: bool = False
    missing_columns: List[int] = field(default_factory=list)
    missing_fds: List[str] = field(default_factory=list)
    lj_explanation: Optional[str] = None
    global_manual_rows: List[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, data):
        data = data or {}
        lj_details = data.get('ljDetails') or {}
        bcnf = data.get('bcnfdecomposition')
        if bcnf is None:
            bcnf = data.get('bcnfDecomposition', False)
        try:
            union_cols = [int(c) for c in data.get('unionCols') or []]
            missing_columns = [int(c) for c in data.get('missingColumns') or []]
        except (TypeError, ValueError):
            logger.warning("Malformed column list in decompose-all response")
            union_cols, missing_columns = [], []
        return cls(
            lj_preserved=bool(data.get('ljPreserved', False)),
            dp_preserved=bool(data.get('dpPreserved', False)),
            global_ric=_parse_matrix(data.get('globalRic'), 'global RIC'),
            union_cols=union_cols,
            table_results=[TableResult.from_json(t) for t in data.get('tableResults') or []],
            bcnf=bool(bcnf),
            missing_columns=missing_columns,
            missing_fds=_parse_strings(data.get('missingFDs')),
            lj_explanation=lj_details.get('explanation') if isinstance(lj_details, dict) else None,
            global_manual_rows=[str(r) for r in data.get('globalManualRows') or []],
        )

    def to_json(self):
        return {
            "ljPreserved": self.lj_preserved,
            "dpPreserved": self.dp_preserved,
            "globalRic": self.global_ric,
            "unionCols": list(self.union_cols),
            "tableResults": [t.to_json() for t in self.table_results],
            "bcnfdecomposition": self.bcnf,
            "missingColumns": list(self.missing_columns),
            "missingFDs": list(self.missing_fds),
            "ljDetails": {"explanation": self.lj_explanation},
        }


# --- Request / response endpoints ---

class SolverClient:
    """ Thin wrapper over the solver's JSON endpoints, all relative to base_url. """

    def __init__(self, base_url=DEFAULT_BASE_URL, session=None, time_limit=30,
                 monte_carlo=False, samples=0, request_timeout=None):
        self.base_url = base_url.rstrip('/')
        self.session = session if session is not None else requests.Session()
        self.time_limit = int(time_limit)
        self.monte_carlo = bool(monte_carlo)
        self.samples = int(samples)
        self.request_timeout = request_timeout

    def url(self, endpoint):
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def solver_options(self):
        return {
            "timeLimit": self.time_limit,
            "monteCarlo": self.monte_carlo,
            "samples": max(self.samples, 1) if self.monte_carlo else 0,
        }

    @staticmethod
    def _error_message(response):
        try:
            body = response.json()
            if isinstance(body, dict) and body.get('error'):
                return str(body['error'])
        except ValueError:
            pass
        return response.text or f"Solver returned HTTP {response.status_code}"

    def _post(self, endpoint, payload, **kwargs):
        logger.debug("POST %s %s", endpoint, payload)
        try:
            response = self.session.post(self.url(endpoint), json=payload,
                                         timeout=self.request_timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("Solver unreachable at %s: %s", endpoint, e)
            raise SolverError(f"Solver unreachable: {e}") from e
        if not response.ok:
            message = self._error_message(response)
            logger.warning("Solver rejected %s (%s): %s", endpoint, response.status_code, message)
            raise SolverError(message, response.status_code)
        return response

    def _post_json(self, endpoint, payload):
        response = self._post(endpoint, payload)
        try:
            return response.json()
        except ValueError as e:
            raise SolverError(f"Solver sent invalid JSON for {endpoint}", response.status_code) from e

    def project_fds(self, columns):
        """ Global FD strings (1-based) that hold on the given columns. """
        body = self._post_json('project-fds', {"columns": list(columns)})
        return _parse_strings(body.get('projectedFDs', body.get('fds')))

    def decompose(self, table_payload, base_columns=None):
        payload = dict(table_payload)
        payload.update(self.solver_options())
        if base_columns:
            payload["baseColumns"] = list(base_columns)
        return TableResult.from_json(self._post_json('decompose', payload))

    def decompose_all_payload(self, tables, fds, base_columns=None, manual_data=None):
        payload = {"tables": list(tables), "fds": fds or ''}
        payload.update(self.solver_options())
        if manual_data:
            payload["manualData"] = manual_data
        if base_columns:
            payload["baseColumns"] = list(base_columns)
        return payload

    def decompose_all(self, payload):
        return DecomposeAllResponse.from_json(self._post_json('decompose-all', payload))

    def start_stream(self, payload):
        body = self._post_json('decompose-stream/start', payload)
        token = body.get('token')
        if not token:
            raise SolverError("Solver did not return a stream token")
        return token

    def open_stream(self, token):
        # no read timeout on the stream itself; only a dropped connection ends it
        try:
            response = self.session.get(self.url('decompose-stream'), params={"token": token},
                                        stream=True, timeout=None)
        except requests.RequestException as e:
            raise StreamFailedError(f"Could not open progress stream: {e}") from e
        if not response.ok:
            message = self._error_message(response)
            response.close()
            raise StreamFailedError(message)
        return response

    def _redirect(self, endpoint, payload):
        response = self._post(endpoint, payload, allow_redirects=False)
        if 300 <= response.status_code < 400:
            return response.headers.get('Location')
        try:
            body = response.json()
        except ValueError:
            return None
        return body.get('redirectUrl') if isinstance(body, dict) else None

    def continue_normalization(self, payload):
        return self._redirect('continue', payload)

    def bcnf_review(self, payload):
        return self._redirect('bcnf-review', payload)

    def undo(self):
        """ Remaining remote history, JSON strings, most recent last. """
        body = self._post_json('undo', None)
        if not isinstance(body, list):
            logger.warning("Unexpected undo response: %r", body)
            return []
        return [b if isinstance(b, str) else json.dumps(b) for b in body]

    def close(self):
        self.session.close()


# --- Streaming job ---

class JobState(Enum):
    IDLE = 'idle'
    STARTED = 'started'
    STREAMING = 'streaming'
    COMPLETED = 'completed'
    FAILED = 'failed'


class ComputationJob:
    """ One check/compute run. Terminal once COMPLETED or FAILED, never reused. """

    def __init__(self, payload):
        self.payload = payload
        self.token = None
        self.state = JobState.IDLE
        self.progress_log = []
        self.result = None
        self.error = None
        self._response = None

    @property
    def done(self):
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def fail(self, message):
        self.state = JobState.FAILED
        self.error = message
        self.result = None
        self._close()

    def cancel(self):
        if not self.done:
            logger.info("Cancelling job %s", self.token)
            self.fail("Cancelled.")

    def _close(self):
        if self._response is not None:
            self._response.close()
            self._response = None


def iter_sse(lines):
    """
    Yields (event, data) pairs from text/event-stream lines. An event is dispatched on
    a blank line; ':' lines are comments. Event name defaults to 'message'.
    """
    event, data = None, []
    for raw in lines:
        line = raw.decode('utf-8') if isinstance(raw, bytes) else raw
        line = line.rstrip('\r')
        if not line:
            if data:
                yield event or 'message', '\n'.join(data)
            event, data = None, []
            continue
        if line.startswith(':'):
            continue
        name, _, value = line.partition(':')
        if value.startswith(' '):
            value = value[1:]
        if name == 'event':
            event = value
        elif name == 'data':
            data.append(value)
    if data:
        yield event or 'message', '\n'.join(data)


def _decode_data(data):
    try:
        return json.loads(data)
    except ValueError:
        return {"message": data}


class StreamingComputationClient:
    """
    start -> token, then consume the ordered progress stream until complete or
    stream-error. Progress is appended to job.progress_log strictly in arrival order.
    """

    def __init__(self, solver):
        self.solver = solver
        self.current_job = None

    @property
    def state(self):
        return self.current_job.state if self.current_job is not None else JobState.IDLE

    def start(self, payload):
        job = ComputationJob(payload)
        self.current_job = job
        try:
            job.token = self.solver.start_stream(payload)
        except SolverError as e:
            job.fail(e.message)
            self.current_job = None
            raise
        job.state = JobState.STARTED
        return job

    def stream(self, job):
        """
        Generator of progress messages. Returns normally once the job completed, with
        job.result set; raises StreamFailedError otherwise (job.result stays None).
        """
        try:
            job._response = self.solver.open_stream(job.token)
        except StreamFailedError as e:
            job.fail(e.message)
            self._finish(job)
            raise
        job.state = JobState.STREAMING
        try:
            for event, data in iter_sse(job._response.iter_lines(decode_unicode=True)):
                if job.done:
                    break
                body = _decode_data(data)
                if event == 'progress':
                    message = body.get('message', data) if isinstance(body, dict) else data
                    job.progress_log.append(str(message))
                    yield str(message)
                elif event == 'complete':
                    payload = body.get('payload', body) if isinstance(body, dict) else {}
                    job._close()
                    job.result = DecomposeAllResponse.from_json(payload)
                    job.state = JobState.COMPLETED
                    logger.info("Job %s completed after %d progress events",
                                job.token, len(job.progress_log))
                    return
                elif event == 'stream-error':
                    message = body.get('message', data) if isinstance(body, dict) else data
                    logger.warning("Job %s failed: %s", job.token, message)
                    job.fail(str(message))
                    raise StreamFailedError(str(message), job.progress_log)
        except requests.RequestException as e:
            logger.warning("Job %s lost its connection: %s", job.token, e)
            job.fail("Connection lost.")
            raise StreamFailedError("Connection lost.", job.progress_log) from e
        except GeneratorExit:
            job.cancel()
            raise
        finally:
            if job.state != JobState.COMPLETED:
                job._close()
            self._finish(job)
        if job.state == JobState.FAILED:
            raise StreamFailedError(job.error or "Cancelled.", job.progress_log)
        logger.warning("Job %s stream ended before completion", job.token)
        job.fail("Connection lost.")
        raise StreamFailedError("Connection lost.", job.progress_log)

    def _finish(self, job):
        if self.current_job is job:
            self.current_job = None

    def run(self, payload, on_progress=None, confirm=None):
        """
        start + stream. on_progress(message) is called per event in order. If confirm
        is given, confirm(job) is called after completion and before the result is
        returned.
        """
        job = self.start(payload)
        for message in self.stream(job):
            if on_progress is not None:
                on_progress(message)
        if confirm is not None:
            confirm(job)
        return job.result
