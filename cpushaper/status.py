"""Health endpoint rendering the controller status as JSON (WSGI app)."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Protocol, Tuple

_UNAVAILABLE_MESSAGE = "controller unavailable"


class _StatusController(Protocol):
    def state(self) -> Any: ...

    def last_error(self) -> Optional[BaseException]: ...

    def last_estimator_error(self) -> Optional[BaseException]: ...


@dataclass(frozen=True)
class Snapshot:
    """Controller status as reported by the health endpoint."""

    state: str
    last_oci_error: str = ""
    estimator_error: str = ""

    def to_dict(self) -> dict:
        """Return the JSON document form of the snapshot."""
        return {
            "state": self.state,
            "ociError": self.last_oci_error,
            "estimatorError": self.estimator_error,
        }

    def to_json(self) -> bytes:
        """Encode the snapshot as compact JSON."""
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")


def _message(error: Optional[BaseException]) -> str:
    return "" if error is None else str(error)


class StatusHandler:
    """Proxies the status of a controller as a JSON health document."""

    def __init__(self, controller: Optional[_StatusController]) -> None:
        self._controller = controller

    def snapshot(self) -> Snapshot:
        """Capture the controller status; raise RuntimeError without a controller."""
        controller = self._controller
        if controller is None:
            raise RuntimeError(_UNAVAILABLE_MESSAGE)

        return Snapshot(
            state=str(controller.state()),
            last_oci_error=_message(controller.last_error()),
            estimator_error=_message(controller.last_estimator_error()),
        )

    def __call__(
        self,
        environ: dict,
        start_response: Callable[[str, List[Tuple[str, str]]], object],
    ) -> Iterable[bytes]:
        if self._controller is None:
            body = f"{_UNAVAILABLE_MESSAGE}\n".encode("utf-8")
            start_response(
                "503 Service Unavailable",
                [
                    ("Content-Type", "text/plain; charset=utf-8"),
                    ("X-Content-Type-Options", "nosniff"),
                    ("Content-Length", str(len(body))),
                ],
            )
            return [body]

        payload = self.snapshot().to_json()
        start_response(
            "200 OK",
            [("Content-Type", "application/json"), ("Content-Length", str(len(payload)))],
        )
        return [payload]