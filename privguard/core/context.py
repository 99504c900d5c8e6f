from __future__ import annotations

import contextlib
import contextvars
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Iterator, Optional

from privguard.core.errors import DeadlineExceededError, RequestCancelledError

_TRACE_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("privguard.trace_id", default=None)
_REQUEST: contextvars.ContextVar[Optional["RequestContext"]] = contextvars.ContextVar("privguard.request", default=None)


def new_trace_id() -> str:
    return uuid.uuid4().hex


def current_trace_id(default: Optional[str] = None) -> Optional[str]:
    trace_id = _TRACE_ID.get()
    return trace_id if trace_id else default


def resolve_trace_id(trace_id: Optional[str] = None) -> str:
    if trace_id:
        return str(trace_id)
    existing = current_trace_id()
    if existing:
        return existing
    return new_trace_id()


@contextlib.contextmanager
def trace_context(trace_id: Optional[str]) -> Iterator[Optional[str]]:
    if not trace_id:
        yield current_trace_id()
        return
    token = _TRACE_ID.set(str(trace_id))
    try:
        yield str(trace_id)
    finally:
        try:
            _TRACE_ID.reset(token)
        except ValueError:
            pass


@dataclass
class RequestContext:
    """
    Per-request metadata and cancellation.

    Actor fields are copied onto audit events. `check()` is called by the
    ledgers before storage I/O so a cancelled or expired request stops early.
    """

    trace_id: str = field(default_factory=new_trace_id)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    deadline: Optional[float] = None
    _cancel: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def with_timeout(cls, seconds: float, **kwargs) -> "RequestContext":
        return cls(deadline=time.time() + float(seconds), **kwargs)

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def expired(self, now: Optional[float] = None) -> bool:
        if self.deadline is None:
            return False
        return float(now if now is not None else time.time()) >= float(self.deadline)

    def check(self) -> None:
        if self._cancel.is_set():
            raise RequestCancelledError(trace_id=self.trace_id)
        if self.expired():
            raise DeadlineExceededError(trace_id=self.trace_id, deadline=self.deadline)


def current_context() -> Optional[RequestContext]:
    return _REQUEST.get()


def check_context(ctx: Optional[RequestContext]) -> None:
    c = ctx if ctx is not None else _REQUEST.get()
    if c is not None:
        c.check()


@contextlib.contextmanager
def request_scope(ctx: RequestContext) -> Iterator[RequestContext]:
    """Make `ctx` the active request (and trace id) for the enclosed block."""
    token = _REQUEST.set(ctx)
    try:
        with trace_context(ctx.trace_id):
            yield ctx
    finally:
        try:
            _REQUEST.reset(token)
        except ValueError:
            pass
