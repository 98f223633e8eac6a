import json

import pytest

from workbench.solver_client import SolverClient

BASE_URL = 'http://solver.test/normalize'


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=None, lines=None, headers=None):
        self.status_code = status_code
        self._json = json_data
        self.text = text if text is not None else (json.dumps(json_data) if json_data is not None else '')
        self.lines = list(lines or [])
        self.headers = headers or {}
        self.closed = False

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._json is None:
            return json.loads(self.text)
        return self._json

    def iter_lines(self, decode_unicode=False):
        for line in self.lines:
            if isinstance(line, Exception):
                raise line
            yield line

    def close(self):
        self.closed = True


class FakeSession:
    """
    Stand-in for requests.Session. handlers maps an endpoint (path after the base URL)
    to a FakeResponse, a list of them (consumed in order) or a callable(body) -> FakeResponse.
    """

    def __init__(self):
        self.handlers = {}
        self.calls = []
        self.closed = False

    def on(self, endpoint, handler):
        self.handlers[endpoint] = handler
        return self

    def _dispatch(self, method, url, body):
        endpoint = url[len(BASE_URL) + 1:] if url.startswith(BASE_URL) else url
        self.calls.append((method, endpoint, body))
        handler = self.handlers.get(endpoint)
        if handler is None:
            return FakeResponse(404, {"error": f"no handler for {endpoint}"})
        if isinstance(handler, list):
            return handler.pop(0)
        if callable(handler):
            return handler(body)
        return handler

    def post(self, url, json=None, timeout=None, allow_redirects=True, **kwargs):
        return self._dispatch('POST', url, json)

    def get(self, url, params=None, stream=False, timeout=None, **kwargs):
        return self._dispatch('GET', url, params)

    def endpoints(self):
        return [endpoint for _, endpoint, _ in self.calls]

    def close(self):
        self.closed = True


def sse_lines(*events):
    """ ('progress', {...}), ... -> text/event-stream lines """
    lines = []
    for event, data in events:
        lines.append(f"event: {event}")
        lines.append(f"data: {json.dumps(data)}")
        lines.append("")
    return lines


def projecting(fd_strings):
    """ project-fds handler returning the 1-based global FDs that fit the requested columns. """
    def handler(body):
        held = {c + 1 for c in body["columns"]}
        result = []
        for text in fd_strings:
            lhs, rhs = text.split('->')
            attrs = {int(a) for a in lhs.split(',') if a} | {int(a) for a in rhs.split(',')}
            if attrs <= held:
                result.append(text)
        return FakeResponse(200, {"projectedFDs": result})
    return handler


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def solver(fake_session):
    return SolverClient(BASE_URL, session=fake_session)
