import logging
import time

logger = logging.getLogger(__name__)


class SessionStats:
    """
    Attempt counter and elapsed-time clock of one normalization session.
    Owned by the workspace; the decomposition core only reads it.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self.attempts = 0
        self.started_at = None
        self.bcnf_summary = None

    @property
    def running(self):
        return self.started_at is not None

    def start(self):
        """ First check of a session: attempts become 1 and the clock starts. """
        if self.attempts == 0:
            self.attempts = 1
        if self.started_at is None:
            self.started_at = self._clock()

    def record_attempt(self):
        # a change only counts once a first check has started the session
        if self.attempts:
            self.attempts += 1

    def elapsed_seconds(self):
        if self.started_at is None:
            return 0
        return int(self._clock() - self.started_at)

    def finish(self, table_count, dependency_preserved):
        """ Freezes the current values into the BCNF summary and resets the counters. """
        self.bcnf_summary = {
            "attempts": self.attempts or 1,
            "elapsedTime": self.elapsed_seconds(),
            "tableCount": table_count,
            "dependencyPreserved": bool(dependency_preserved),
        }
        logger.info("BCNF reached: %s", self.bcnf_summary)
        self.reset()
        return self.bcnf_summary

    def reset(self):
        self.attempts = 0
        self.started_at = None

    def to_dict(self):
        return {
            "attempts": self.attempts,
            "elapsedTime": self.elapsed_seconds(),
            "running": self.running,
            "bcnfSummary": self.bcnf_summary,
        }
