"""Error taxonomy for the timeclock core.

Per-request failures (unknown worker, bad range) raise one of these and abort
the request. DateParseError is the exception to that rule: callers that
aggregate many punches or calendar entries catch it and skip the item.
"""


class TimeclockError(Exception):
    """Base class for all errors raised by tclib."""


class NotFound(TimeclockError):
    pass


class SiteNotFound(NotFound):
    def __init__(self, site_id):
        super().__init__(f"Site {site_id} not found")
        self.site_id = site_id


class WorkerNotFound(NotFound):
    def __init__(self, worker_id):
        super().__init__(f"Worker {worker_id} not found")
        self.worker_id = worker_id


class CalendarNotFound(NotFound):
    pass


class BadRequest(TimeclockError):
    pass


class BadRange(BadRequest):
    pass


class Conflict(TimeclockError):
    pass


class DateParseError(TimeclockError, ValueError):
    def __init__(self, value, reason: str = "invalid date"):
        super().__init__(f"{reason}: {value!r}")
        self.value = value
