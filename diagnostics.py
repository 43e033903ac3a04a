import json
import logging

logger = logging.getLogger(__name__)


def configure_logging(level=logging.INFO):
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)-7s %(name)s: %(message)s',
        datefmt='%H:%M:%S',
    )


class IssueLog:
    """Bounded log for per-tick problems.

    A broken body can fail on every frame; each distinct issue is logged once
    and free-form messages stop after ``max_logs``.
    """

    def __init__(self, max_logs=10, log=None):
        self.max_logs = max_logs
        self.log_count = 0
        self.error_count = 0
        self.issues = set()
        self._log = log or logger

    def log(self, msg, *args):
        if self.log_count < self.max_logs:
            self._log.info(msg, *args)
            self.log_count += 1

    def issue(self, kind, **details):
        """Warn about an issue the first time it is seen, at most ``max_logs`` issues.

        Returns True if logged.
        """
        key = f"{kind}-{json.dumps(details, sort_keys=True, default=str)}"
        if key in self.issues or len(self.issues) >= self.max_logs:
            return False
        self.issues.add(key)
        self._log.warning("physics issue detected [%s]: %s", kind, details)
        return True

    def error(self, msg, exc):
        """Log an engine error, at most ``max_logs`` times."""
        if self.error_count < self.max_logs:
            self._log.error("%s: %s", msg, exc)
            self.error_count += 1

    def reset(self):
        self.log_count = 0
        self.error_count = 0
        self.issues.clear()
