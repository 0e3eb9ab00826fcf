"""Network and console sensors for one page.

``PageRecorder`` subscribes to the page's request/response/console events
once and appends to shared, append-only lists. It also installs the
read-only route guard: every POST/PUT/PATCH/DELETE is aborted before
dispatch and recorded as a blocked write.

Correlation of requests to an action is a pure function over the recorded
events so it can be tested without a browser.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from verax.core.models import BlockedWrite, ConsoleSummary, NetworkSummary

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
"""HTTP methods that are never allowed to reach the server."""

BLOCKED_REASON = "write-blocked-read-only-mode"


def now_ms() -> float:
    """Wall-clock time in milliseconds, the timebase for all recorded events."""
    return time.time() * 1000


@dataclass
class NetworkEvent:
    """One request seen on the page.

    Args:
        url: Request URL.
        method: HTTP method, upper case.
        started_at_ms: When the request started (``now_ms`` timebase).
        status: Response status, None until a response arrives.
        failed: True when the request failed or got a 4xx/5xx response.
        blocked: True when the read-only guard aborted it.
        finished_at_ms: When the response or failure arrived.
    """

    url: str
    method: str
    started_at_ms: float
    status: int | None = None
    failed: bool = False
    blocked: bool = False
    finished_at_ms: float | None = None

    @property
    def duration_ms(self) -> float | None:
        if self.finished_at_ms is None:
            return None
        return self.finished_at_ms - self.started_at_ms

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "method": self.method,
            "startedAtMs": self.started_at_ms,
            "status": self.status,
            "failed": self.failed,
            "blocked": self.blocked,
            "durationMs": self.duration_ms,
        }


@dataclass
class ConsoleEvent:
    type: str
    text: str
    timestamp_ms: float

    def to_dict(self) -> dict:
        return {"type": self.type, "text": self.text, "timestampMs": self.timestamp_ms}


def is_correlated(event: NetworkEvent, action_started_at_ms: float, window_ms: float) -> bool:
    """Return True if the request started inside the closed correlation window.

    The window is ``[action_started_at_ms, action_started_at_ms + window_ms]``,
    inclusive at both ends.
    """
    return action_started_at_ms <= event.started_at_ms <= action_started_at_ms + window_ms


def correlate_network_events(
    events: list[NetworkEvent], action_started_at_ms: float, window_ms: float
) -> list[NetworkEvent]:
    """Return the events correlated with an action, in arrival order.

    Events outside the window stay recorded by the caller but are not
    returned here.
    """
    return [e for e in events if is_correlated(e, action_started_at_ms, window_ms)]


def summarize_network(
    events: list[NetworkEvent],
    correlated: list[NetworkEvent],
    slow_request_ms: float,
) -> NetworkSummary:
    """Build the network sensor summary for one attempt."""
    live = [e for e in events if not e.blocked]
    failed = [e for e in live if e.failed]
    successful = [e for e in live if e.status is not None and not e.failed]
    slow = [e for e in live if (e.duration_ms or 0) > slow_request_ms]
    return NetworkSummary(
        total_requests=len(live),
        failed_requests=len(failed),
        successful_requests=len(successful),
        slow_requests=len(slow),
        blocked_requests=sum(1 for e in events if e.blocked),
        correlated_requests=sum(1 for e in correlated if not e.blocked),
        top_failed_urls=[e.url for e in failed][:5],
        observed_request_urls=[e.url for e in live],
        has_network_activity=bool(live),
    )


def summarize_console(events: list[ConsoleEvent]) -> ConsoleSummary:
    errors = sum(1 for e in events if e.type == "error")
    warnings = sum(1 for e in events if e.type == "warning")
    return ConsoleSummary(errors=errors, warnings=warnings, has_errors=errors > 0)


@dataclass
class PageRecorder:
    """Append-only network/console event log for one page.

    Listeners are registered once per page by :meth:`attach`. Execution is
    single-threaded, so the lists need no locking; readers slice them by
    index or timestamp.
    """

    network_events: list[NetworkEvent] = field(default_factory=list)
    console_events: list[ConsoleEvent] = field(default_factory=list)
    blocked_writes: list[BlockedWrite] = field(default_factory=list)
    _by_request: dict[int, NetworkEvent] = field(default_factory=dict, repr=False)
    _attached: bool = field(default=False, repr=False)

    async def attach(self, page: Any) -> None:
        """Register listeners and the read-only route guard on ``page``.

        Must be called before the first navigation.
        """
        if self._attached:
            return
        page.on("request", self._on_request)
        page.on("response", self._on_response)
        page.on("requestfinished", self._on_request_finished)
        page.on("requestfailed", self._on_request_failed)
        page.on("console", self._on_console)
        await page.route("**/*", self._guard_route)
        self._attached = True

    @property
    def pending_requests(self) -> int:
        """Requests seen that have neither finished nor failed yet."""
        return len(self._by_request)

    async def _guard_route(self, route: Any) -> None:
        request = route.request
        method = request.method.upper()
        if method in MUTATING_METHODS:
            self.blocked_writes.append(
                BlockedWrite(url=request.url, method=method, timestamp=datetime.now(UTC))
            )
            event = self._by_request.get(id(request))
            if event is not None:
                event.blocked = True
            logger.info("Blocked %s %s (read-only mode)", method, request.url)
            await route.abort("blockedbyclient")
            return
        await route.continue_()

    def _on_request(self, request: Any) -> None:
        event = NetworkEvent(url=request.url, method=request.method.upper(), started_at_ms=now_ms())
        if event.method in MUTATING_METHODS:
            event.blocked = True
        self._by_request[id(request)] = event
        self.network_events.append(event)

    def _on_response(self, response: Any) -> None:
        event = self._by_request.get(id(response.request))
        if event is None:
            return
        event.status = response.status
        event.failed = response.status >= 400
        event.finished_at_ms = now_ms()

    def _on_request_finished(self, request: Any) -> None:
        event = self._by_request.pop(id(request), None)
        if event is not None and event.finished_at_ms is None:
            event.finished_at_ms = now_ms()

    def _on_request_failed(self, request: Any) -> None:
        event = self._by_request.pop(id(request), None)
        if event is None:
            return
        event.failed = not event.blocked
        event.finished_at_ms = now_ms()

    def _on_console(self, message: Any) -> None:
        if message.type not in ("error", "warning"):
            return
        self.console_events.append(
            ConsoleEvent(type=message.type, text=message.text, timestamp_ms=now_ms())
        )
