"""Consent polling.

A data request is authorized out of band by its owner. The broker exposes the
decision as a status on the request record, and ``ConsentPoller`` queries that
record until it reaches a terminal status, the deadline passes, or the caller
cancels.

Each observed record is reduced to a ``PollStep`` by ``evaluate_status``:
continue, approved, or failed. Only terminal steps leave the loop.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import ErrorCode, RequestError, invalid_response

log = logging.getLogger(__name__)


class RequestStatus:
    INITIATED = "INITIATED"
    AWAITING_CONSENT = "AWAITING_CONSENT"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"

    IN_FLIGHT = frozenset({INITIATED, AWAITING_CONSENT})
    REJECTED = frozenset({DENIED, EXPIRED, FAILED})
    TERMINAL = frozenset({APPROVED}) | REJECTED


@dataclass
class RequestRecord:
    request_id: str
    status: str
    provider_endpoint: Optional[str] = None
    access_token: Optional[str] = None
    platform_signature: Optional[str] = None
    failure_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Any, request_id: str = "") -> "RequestRecord":
        if not isinstance(data, dict):
            raise invalid_response("request status", "expected a JSON object", request_id or None)
        status = data.get("status")
        if not isinstance(status, str) or not status:
            raise invalid_response("request status", "missing status", request_id or None)
        return cls(
            request_id=str(data.get("requestId") or request_id),
            status=status,
            provider_endpoint=data.get("providerEndpoint"),
            access_token=data.get("accessToken"),
            platform_signature=data.get("platformSignature"),
            failure_reason=data.get("failureReason"),
            raw=data,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in RequestStatus.TERMINAL


@dataclass
class PollConfig:
    interval_ms: int = 3000
    timeout_ms: int = 120000

    def __post_init__(self) -> None:
        if self.interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")


@dataclass
class PollSession:
    request_id: str
    interval: float
    deadline: float
    cancel_event: threading.Event
    started_at: float
    queries: int = 0
    last_status: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class PollStep:
    CONTINUE = "continue"
    APPROVED = "approved"
    FAILED = "failed"

    def __init__(self, kind: str, record: Optional[RequestRecord] = None, error: Optional[RequestError] = None):
        self.kind = kind
        self.record = record
        self.error = error

    def __repr__(self) -> str:
        return f"PollStep({self.kind!r}, record={self.record!r}, error={self.error!r})"


def evaluate_status(record: RequestRecord) -> PollStep:
    status = record.status
    if status == RequestStatus.APPROVED:
        missing = [name for name, value in (("providerEndpoint", record.provider_endpoint), ("accessToken", record.access_token)) if not value]
        if missing:
            return PollStep(
                PollStep.FAILED,
                record,
                invalid_response("poll_for_consent", f"approved request is missing {', '.join(missing)}", record.request_id),
            )
        return PollStep(PollStep.APPROVED, record)
    if status in RequestStatus.REJECTED:
        reason = f": {record.failure_reason}" if record.failure_reason else ""
        return PollStep(
            PollStep.FAILED,
            record,
            RequestError(
                status,
                f"request {record.request_id} ended with status {status}{reason}",
                request_id=record.request_id,
                failure_reason=record.failure_reason,
            ),
        )
    if status in RequestStatus.IN_FLIGHT:
        return PollStep(PollStep.CONTINUE, record)
    return PollStep(
        PollStep.FAILED,
        record,
        RequestError(
            ErrorCode.UNKNOWN_STATUS,
            f"request {record.request_id} reported unknown status {status!r}",
            request_id=record.request_id,
            details={"status": status},
        ),
    )


class ConsentPoller:
    """Sequentially queries ``fetch_status(request_id)`` until a terminal outcome.

    ``fetch_status`` returns the decoded status body and raises ``RequestError``
    on failure; errors flagged ``transient`` are retried on the next tick, all
    others propagate immediately.
    """

    def __init__(
        self,
        fetch_status: Callable[[str], Any],
        config: Optional[PollConfig] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetch_status = fetch_status
        self.config = config or PollConfig()
        self.logger = logger or log
        self.clock = clock

    def poll(
        self,
        request_id: str,
        cancel_event: Optional[threading.Event] = None,
        on_status: Optional[Callable[[RequestRecord], None]] = None,
    ) -> RequestRecord:
        if not request_id:
            raise ValueError("request_id is required")
        now = self.clock()
        session = PollSession(
            request_id=request_id,
            interval=self.config.interval_ms / 1000,
            deadline=now + self.config.timeout_ms / 1000,
            cancel_event=cancel_event or threading.Event(),
            started_at=now,
        )
        while True:
            if session.cancelled:
                raise self._aborted(session)
            if self.clock() >= session.deadline:
                raise self._timed_out(session)

            step = self._query(session)
            if step.record is not None and on_status is not None:
                on_status(step.record)
            if step.kind == PollStep.APPROVED:
                self.logger.info("request %s approved after %d queries", request_id, session.queries)
                return step.record
            if step.kind == PollStep.FAILED:
                raise step.error

            remaining = session.deadline - self.clock()
            if remaining <= 0:
                raise self._timed_out(session)
            if session.cancel_event.wait(min(session.interval, remaining)):
                raise self._aborted(session)

    def _query(self, session: PollSession) -> PollStep:
        session.queries += 1
        try:
            data = self.fetch_status(session.request_id)
        except RequestError as exc:
            if not exc.transient:
                raise
            self.logger.warning("transient error polling request %s: %s", session.request_id, exc)
            return PollStep(PollStep.CONTINUE, error=exc)
        record = RequestRecord.from_dict(data, session.request_id)
        if record.status != session.last_status:
            self.logger.info("request %s status %s", session.request_id, record.status)
            session.last_status = record.status
        return evaluate_status(record)

    def _aborted(self, session: PollSession) -> RequestError:
        return RequestError(
            ErrorCode.ABORTED,
            f"polling for request {session.request_id} was cancelled",
            request_id=session.request_id,
            details={"last_status": session.last_status, "queries": session.queries},
        )

    def _timed_out(self, session: PollSession) -> RequestError:
        return RequestError(
            ErrorCode.TIMED_OUT,
            f"request {session.request_id} not decided within {self.config.timeout_ms} ms",
            request_id=session.request_id,
            details={"last_status": session.last_status, "queries": session.queries},
        )
