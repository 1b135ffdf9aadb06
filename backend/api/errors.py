from __future__ import annotations


class ApiError(RuntimeError):
    """
    A failed call to the layers REST API.

    `status` is None for transport failures (connection refused, timeout), which are
    the transient kind: callers keep their stale state and retry on the next change.
    """

    def __init__(self, message: str, *, status: int | None = None, path: str | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.path = path

    @property
    def is_transient(self) -> bool:
        return self.status is None or self.status >= 500

    def __str__(self) -> str:
        where = f" ({self.path})" if self.path else ""
        if self.status is None:
            return f"{self.message}{where}"
        return f"HTTP {self.status}: {self.message}{where}"
