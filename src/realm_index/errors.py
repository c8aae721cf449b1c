"""Error taxonomy for indexing, querying, and link resolution."""

from __future__ import annotations

SerializedError = dict[str, object]


class CardError(Exception):
    """Base error carrying an HTTP-like status and a serializable payload."""

    def __init__(
        self,
        detail: str,
        *,
        status: int = 500,
        title: str | None = None,
        source: str | None = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status = status
        self.title = title or _default_title(status)
        self.source = source

    def to_dict(self) -> SerializedError:
        """Return the error payload stored in the index or sent to callers."""
        payload: SerializedError = {
            "status": self.status,
            "title": self.title,
            "detail": self.detail,
        }
        if self.source is not None:
            payload["source"] = self.source
        return payload


class CardParseError(CardError):
    """Raised when an instance document or module cannot be parsed."""

    def __init__(self, detail: str, *, source: str | None = None) -> None:
        super().__init__(detail, status=500, title="Parse error", source=source)


class DefinitionError(CardError):
    """Raised when a type definition cannot be built (cycles, failed lookups)."""

    def __init__(self, detail: str, *, source: str | None = None) -> None:
        super().__init__(detail, status=500, title="Definition error", source=source)


class FilterError(CardError):
    """Raised synchronously to search callers for malformed or unknown filters."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, status=400, title="Invalid filter")


class CardFetchError(CardError):
    """Raised when a remote realm is unreachable or returns a non-document payload."""

    def __init__(self, detail: str, *, status: int = 502, source: str | None = None) -> None:
        super().__init__(detail, status=status, source=source)


class RunnerNotRegisteredError(CardError):
    """Raised when an index run is attempted without a registered runner."""

    def __init__(self, job_name: str) -> None:
        super().__init__(
            f"Index runner has not been registered for job '{job_name}'.",
            status=500,
            title="Runner not registered",
        )
        self.job_name = job_name


def _default_title(status: int) -> str:
    if status == 400:
        return "Bad Request"
    if status == 404:
        return "Not Found"
    if 400 < status < 500:
        return "Client Error"
    return "Internal Server Error"
