"""Apply-time errors.

These are scoped to one resource: the executor records them on that
resource's report and keeps converging independent branches.
"""


class ResourceError(Exception):
    """Base class for errors raised while converging one resource."""

    def __init__(self, ref, message: str):
        self.ref = ref
        super().__init__(f"{ref}: {message}")


class ObserveError(ResourceError):
    """Reading the current state of a resource failed."""
    pass


class ApplyError(ResourceError):
    """Changing a resource towards its desired state failed."""
    pass


class NotifyTimeoutError(ResourceError):
    """A refresh (restart, re-run) did not finish within the timeout."""
    pass
