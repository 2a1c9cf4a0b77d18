# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Network traffic capture by wrapping request callables.

Each ``InterceptTarget`` names an object attribute holding a request
callable (sync or async), e.g. ``httpx.AsyncClient.send``.  ``start()``
replaces it with a wrapper that records a sanitized copy of the call and
delegates to the original unchanged.  Monitoring never blocks or alters
the real request:

- excluded URLs (PrivacyController) record nothing
- capture runs behind a circuit breaker; while open, calls pass through
- any capture or sanitization failure falls back to the unmonitored call
- if patching fails the monitor runs in degraded pass-through mode

A periodic health check (default 30s) notices wrappers removed by someone
else and re-applies them through ``recover()``.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import itertools
import logging
import re
import ssl
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol
from urllib.parse import urlsplit

import httpx

from .errors import CaptureFailure, SanitizationFailure
from .events import EventBus, EventType
from .privacy import PrivacyController
from .resilience import CircuitBreaker, CircuitState, ErrorCategory, ErrorHandler, ErrorSeverity
from .ring_buffer import RingBuffer

logger = logging.getLogger(__name__)

COMPONENT = "network_monitor"

_API_PATH_RE = re.compile(r"/(?:api|graphql|rest|rpc)(?:/|$)|/v\d+(?:/|$)", re.IGNORECASE)
_STATIC_EXT_RE = re.compile(r"\.(?:css|js|mjs|png|jpe?g|gif|svg|webp|ico|woff2?|ttf|eot|map)(?:$|\?)", re.IGNORECASE)


class RequestType(StrEnum):
    FETCH = "fetch"
    XHR = "xhr"
    HTTPX = "httpx"
    OTHER = "other"


class NetworkErrorType(StrEnum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    CORS = "cors"
    SECURITY = "security"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class NetworkRequest:
    id: str
    url: str
    method: str
    headers: dict[str, str]
    timestamp: float
    type: RequestType
    body: str | None = None


@dataclass(frozen=True, slots=True)
class NetworkResponse:
    id: str
    url: str
    status: int
    status_text: str
    headers: dict[str, str]
    timestamp: float
    response_time: float  # ms
    size: int = 0


@dataclass(frozen=True, slots=True)
class NetworkErrorRecord:
    id: str
    url: str
    method: str
    error_type: NetworkErrorType
    message: str
    timestamp: float


@dataclass(frozen=True, slots=True)
class RequestTiming:
    start: float
    end: float | None
    duration_ms: float | None


@dataclass(frozen=True, slots=True)
class NetworkActivityRecord:
    """A request merged with its response or error."""

    id: str
    url: str
    method: str
    status: int | None
    status_text: str
    type: RequestType
    headers: dict[str, str]
    timing: RequestTiming
    timestamp: float
    size: int = 0
    error: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status is not None and 200 <= self.status < 400

    @property
    def is_error(self) -> bool:
        return self.error is not None or (self.status is not None and self.status >= 400)


@dataclass(frozen=True, slots=True)
class NetworkStatistics:
    total_requests: int = 0
    total_responses: int = 0
    total_errors: int = 0
    success_rate: float = 0.0  # percent of requests answered with 2xx/3xx
    average_response_time: float = 0.0  # ms
    requests_by_type: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class NetworkSummary:
    """Compact network view handed to the aggregator."""

    recent: tuple[NetworkActivityRecord, ...] = ()
    statistics: NetworkStatistics = field(default_factory=NetworkStatistics)
    api_endpoints: tuple[str, ...] = ()
    errors: tuple[NetworkActivityRecord, ...] = ()


@dataclass(frozen=True, slots=True)
class HealthStatus:
    is_active: bool
    is_paused: bool
    degraded: bool
    disabled: bool
    circuit_state: CircuitState
    error_count: int
    last_health_check: float | None
    reconnect_attempts: int
    patched_targets: int


@dataclass(frozen=True, slots=True)
class NetworkMonitorConfig:
    """Network capture knobs.  Times are in seconds."""

    buffer_size: int = 1000
    health_check_interval: float = 30.0
    max_reconnect_attempts: int = 5
    max_monitoring_errors: int = 10  # capture errors before auto-pause
    capture_bodies: bool = False
    max_body_size: int = 10_000
    summary_limit: int = 20
    include_static_resources: bool = False

    def __post_init__(self) -> None:
        if self.buffer_size < 1:
            raise ValueError(f"buffer_size must be >= 1, got {self.buffer_size}")
        if self.health_check_interval <= 0:
            raise ValueError(f"health_check_interval must be > 0, got {self.health_check_interval}")
        if self.max_reconnect_attempts < 0:
            raise ValueError(f"max_reconnect_attempts must be >= 0, got {self.max_reconnect_attempts}")
        if self.max_monitoring_errors < 1:
            raise ValueError(f"max_monitoring_errors must be >= 1, got {self.max_monitoring_errors}")


# ---------------------------------------------------------------------------
# Interception targets
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CapturedCall:
    url: str
    method: str
    headers: dict[str, str]
    body: str | bytes | None = None


@dataclass(frozen=True, slots=True)
class CapturedResponse:
    status: int
    status_text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    size: int = 0


class CallAdapter(Protocol):
    def describe_request(self, args: tuple, kwargs: dict) -> CapturedCall: ...

    def describe_response(self, result: Any) -> CapturedResponse: ...


class HttpxAdapter:
    """Reads ``httpx.Client.send`` / ``httpx.AsyncClient.send`` calls."""

    def describe_request(self, args: tuple, kwargs: dict) -> CapturedCall:
        request: httpx.Request = args[0] if args else kwargs["request"]
        try:
            body: bytes | None = request.content
        except httpx.RequestNotRead:
            body = None
        return CapturedCall(
            url=str(request.url),
            method=request.method,
            headers=dict(request.headers),
            body=body,
        )

    def describe_response(self, result: httpx.Response) -> CapturedResponse:
        headers = dict(result.headers)
        try:
            size = len(result.content)
        except httpx.ResponseNotRead:
            size = int(headers.get("content-length", 0) or 0)
        return CapturedResponse(
            status=result.status_code,
            status_text=result.reason_phrase,
            headers=headers,
            size=size,
        )


class CallArgsAdapter:
    """Generic ``fn(url, *, method=..., headers=..., body=...)`` style callables.

    Responses are read from ``status``/``status_code`` attributes or a
    ``{"status": ...}`` mapping.
    """

    def describe_request(self, args: tuple, kwargs: dict) -> CapturedCall:
        url = args[0] if args else kwargs.get("url", "")
        method = kwargs.get("method") or (args[1] if len(args) > 1 and isinstance(args[1], str) else "GET")
        headers = kwargs.get("headers") or {}
        body = kwargs.get("body", kwargs.get("data"))
        return CapturedCall(url=str(url), method=str(method).upper(), headers=dict(headers), body=body)

    def describe_response(self, result: Any) -> CapturedResponse:
        if isinstance(result, Mapping):
            return CapturedResponse(
                status=int(result.get("status", 0)),
                status_text=str(result.get("status_text", "")),
                headers=dict(result.get("headers") or {}),
                size=len(result.get("body") or b""),
            )
        status = getattr(result, "status_code", None)
        if status is None:
            status = getattr(result, "status", 0)
        return CapturedResponse(
            status=int(status),
            status_text=str(getattr(result, "reason_phrase", "") or getattr(result, "reason", "") or ""),
            headers=dict(getattr(result, "headers", None) or {}),
        )


@dataclass(frozen=True)
class InterceptTarget:
    """An attribute on *owner* holding a request callable to wrap."""

    owner: Any
    attribute: str
    request_type: RequestType = RequestType.OTHER
    adapter: CallAdapter = field(default_factory=CallArgsAdapter)

    @property
    def label(self) -> str:
        return f"{type(self.owner).__name__}.{self.attribute}"


def httpx_target(client: httpx.Client | httpx.AsyncClient) -> InterceptTarget:
    """Intercept every request sent through *client*."""
    return InterceptTarget(owner=client, attribute="send", request_type=RequestType.HTTPX, adapter=HttpxAdapter())


def categorize_error(exc: BaseException) -> NetworkErrorType:
    if isinstance(exc, asyncio.CancelledError):
        return NetworkErrorType.CANCELLED
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return NetworkErrorType.TIMEOUT
    message = str(exc).lower()
    if "timeout" in message or "timed out" in message:
        return NetworkErrorType.TIMEOUT
    if "cors" in message or "cross-origin" in message:
        return NetworkErrorType.CORS
    if isinstance(exc, ssl.SSLError) or any(k in message for k in ("ssl", "certificate", "security")):
        return NetworkErrorType.SECURITY
    if isinstance(exc, (httpx.NetworkError, ConnectionError, OSError)) or "network" in message:
        return NetworkErrorType.NETWORK
    return NetworkErrorType.UNKNOWN


def is_static_resource(url: str) -> bool:
    return bool(_STATIC_EXT_RE.search(url))


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


@dataclass
class _Patch:
    target: InterceptTarget
    original: Callable[..., Any]
    wrapper: Callable[..., Any]
    had_own_attribute: bool


@dataclass(frozen=True, slots=True)
class _InFlight:
    id: str
    url: str
    method: str
    started: float  # monotonic


class NetworkMonitor:
    """Transparent, privacy-filtered capture of outbound requests."""

    def __init__(
        self,
        targets: list[InterceptTarget],
        privacy: PrivacyController,
        error_handler: ErrorHandler,
        config: NetworkMonitorConfig | None = None,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._targets = list(targets)
        self._privacy = privacy
        self._errors = error_handler
        self._config = config or NetworkMonitorConfig()
        self._bus = bus
        self._clock = clock
        self._monotonic = monotonic

        size = self._config.buffer_size
        self._requests: RingBuffer[NetworkRequest] = RingBuffer(size, clock=clock)
        self._responses: RingBuffer[NetworkResponse] = RingBuffer(size, clock=clock)
        self._failures: RingBuffer[NetworkErrorRecord] = RingBuffer(size, clock=clock)
        self._in_flight: dict[str, _InFlight] = {}

        self._patches: list[_Patch] = []
        self._ids = itertools.count(1)
        self._active = False
        self._paused = False
        self._degraded = False
        self._disabled = False
        self._monitoring_errors = 0
        self._reconnect_attempts = 0
        self._last_health_check: float | None = None
        self._health_task: asyncio.Task | None = None

        self._breaker = error_handler.breaker(COMPONENT)
        error_handler.register_component(COMPONENT, self.recover)

    # -- Lifecycle --

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def pending_requests(self) -> int:
        """Captured requests still waiting for a response or failure."""
        return len(self._in_flight)

    def add_target(self, target: InterceptTarget) -> None:
        """Register another target; patched immediately when already active."""
        self._targets.append(target)
        if self._active:
            self._patch(target)

    def start(self) -> None:
        """Wrap every target and start the periodic health check.  Idempotent."""
        if self._active:
            return
        self._active = True
        self._paused = False
        self._disabled = False
        self._degraded = False
        for target in self._targets:
            self._patch(target)
        self._start_health_loop()
        logger.info(
            "Network monitoring started: targets=%d patched=%d degraded=%s",
            len(self._targets),
            len(self._patches),
            self._degraded,
        )

    def stop(self) -> None:
        """Restore every original callable.  Idempotent."""
        if not self._active:
            return
        self._active = False
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None
        self._unpatch_all()
        self._in_flight.clear()
        self._reconnect_attempts = 0
        logger.info("Network monitoring stopped")

    def pause(self) -> None:
        """Stop recording; wrappers stay in place and pass calls through."""
        if self._active and not self._paused:
            self._paused = True
            logger.info("Network monitoring paused")

    def resume(self) -> None:
        if self._active and self._paused and not self._disabled:
            self._paused = False
            self._monitoring_errors = 0
            logger.info("Network monitoring resumed")

    # -- Patching --

    def _patch(self, target: InterceptTarget) -> bool:
        try:
            original = getattr(target.owner, target.attribute)
            if not callable(original):
                raise TypeError(f"{target.label} is not callable")
            try:
                had_own = target.attribute in vars(target.owner)
            except TypeError:
                had_own = False
            wrapper = self._make_wrapper(target, original)
            setattr(target.owner, target.attribute, wrapper)
        except (AttributeError, TypeError) as exc:
            self._degraded = True
            logger.warning("Cannot intercept %s (%s); running in pass-through mode", target.label, exc)
            self._errors.handle_error(exc, ErrorCategory.NETWORK, ErrorSeverity.HIGH, COMPONENT, {"target": target.label})
            return False
        self._patches.append(_Patch(target, original, wrapper, had_own))
        return True

    def _unpatch_all(self) -> None:
        patches, self._patches = self._patches, []
        for patch in patches:
            owner, attr = patch.target.owner, patch.target.attribute
            try:
                if getattr(owner, attr, None) is not patch.wrapper:
                    # Someone else replaced it; leave their value alone
                    continue
                if patch.had_own_attribute:
                    setattr(owner, attr, patch.original)
                else:
                    delattr(owner, attr)
            except (AttributeError, TypeError):
                logger.debug("Failed to restore %s", patch.target.label, exc_info=True)

    def _make_wrapper(self, target: InterceptTarget, original: Callable[..., Any]) -> Callable[..., Any]:
        if inspect.iscoroutinefunction(original):

            @functools.wraps(original)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                pending = self._begin(target, args, kwargs)
                try:
                    result = await original(*args, **kwargs)
                except BaseException as exc:
                    self._fail(pending, exc)
                    raise
                self._finish(target, pending, result)
                return result

            return async_wrapper

        @functools.wraps(original)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            pending = self._begin(target, args, kwargs)
            try:
                result = original(*args, **kwargs)
            except BaseException as exc:
                self._fail(pending, exc)
                raise
            self._finish(target, pending, result)
            return result

        return sync_wrapper

    # -- Capture --

    def _recording(self) -> bool:
        return self._active and not self._paused and not self._disabled

    def _begin(self, target: InterceptTarget, args: tuple, kwargs: dict) -> _InFlight | None:
        """Record the outgoing request.  Never raises."""
        if not self._recording():
            return None
        try:
            call = target.adapter.describe_request(args, kwargs)
        except Exception as exc:
            if self._breaker.allow():
                self._breaker.record_failure()
                self._capture_failed(CaptureFailure(f"cannot read request from {target.label}: {exc}"))
            return None
        # Excluded requests never reach the breaker, so they cannot close it
        if not self._privacy.should_monitor_url(call.url) or (
            not self._config.include_static_resources and is_static_resource(call.url)
        ):
            return None
        if not self._breaker.allow():
            return None
        try:
            sanitized = self._privacy.sanitize_network_data(
                {"url": call.url, "headers": call.headers, "body": call.body if self._config.capture_bodies else None}
            )
            body = sanitized.get("body")
            request = NetworkRequest(
                id=f"req_{next(self._ids)}",
                url=sanitized["url"],
                method=call.method.upper(),
                headers=dict(sanitized.get("headers") or {}),
                timestamp=self._clock(),
                type=target.request_type,
                body=str(body)[: self._config.max_body_size] if body else None,
            )
        except SanitizationFailure as exc:
            self._breaker.record_failure()
            self._capture_failed(CaptureFailure(f"sanitization failed for {target.label}: {exc}"))
            return None
        except Exception as exc:
            self._breaker.record_failure()
            self._capture_failed(CaptureFailure(f"capture failed for {target.label}: {exc}"))
            return None
        self._breaker.record_success()
        self._requests.push(request)
        self._privacy.log_data_collection("network", request.url)
        pending = _InFlight(id=request.id, url=request.url, method=request.method, started=self._monotonic())
        self._in_flight[request.id] = pending
        return pending

    def _finish(self, target: InterceptTarget, pending: _InFlight | None, result: Any) -> None:
        if pending is None or self._in_flight.pop(pending.id, None) is None:
            return
        try:
            captured = target.adapter.describe_response(result)
            response = NetworkResponse(
                id=pending.id,
                url=pending.url,
                status=captured.status,
                status_text=captured.status_text,
                headers=self._privacy.sanitize_headers(captured.headers),
                timestamp=self._clock(),
                response_time=(self._monotonic() - pending.started) * 1000.0,
                size=captured.size,
            )
        except Exception as exc:
            self._breaker.record_failure()
            self._capture_failed(CaptureFailure(f"response capture failed: {exc}", url=pending.url))
            return
        self._responses.push(response)
        if self._bus is not None:
            self._bus.publish(EventType.NETWORK_ACTIVITY, response)

    def _fail(self, pending: _InFlight | None, exc: BaseException) -> None:
        if pending is None or self._in_flight.pop(pending.id, None) is None:
            return
        try:
            record = NetworkErrorRecord(
                id=pending.id,
                url=pending.url,
                method=pending.method,
                error_type=categorize_error(exc),
                message=self._privacy.redact(str(exc) or type(exc).__name__)[:500],
                timestamp=self._clock(),
            )
        except Exception:
            logger.debug("Failed to record network error", exc_info=True)
            return
        self._failures.push(record)
        if self._bus is not None:
            self._bus.publish(EventType.NETWORK_ACTIVITY, record)

    def _capture_failed(self, exc: CaptureFailure) -> None:
        self._monitoring_errors += 1
        self._errors.handle_error(exc, ErrorCategory.NETWORK, ErrorSeverity.MEDIUM, COMPONENT)
        if self._monitoring_errors >= self._config.max_monitoring_errors and not self._paused:
            logger.warning("Too many monitoring errors (%d); pausing capture", self._monitoring_errors)
            self.pause()

    # -- Health --

    def _start_health_loop(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; periodic health check disabled")
            return
        self._health_task = loop.create_task(self._health_loop())

    async def _health_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self._config.health_check_interval)
            try:
                self.check_health()
            except Exception:
                logger.warning("Network health check failed", exc_info=True)

    def check_health(self) -> bool:
        """One health pass.  Returns True when every patch is in place."""
        self._last_health_check = self._clock()
        if not self._active or self._disabled:
            return False
        overridden = [p for p in self._patches if getattr(p.target.owner, p.target.attribute, None) is not p.wrapper]
        if not overridden:
            return not self._degraded
        labels = ", ".join(p.target.label for p in overridden)
        logger.warning("Interception removed externally: %s", labels)
        self._errors.handle_error(
            CaptureFailure(f"interception removed: {labels}"),
            ErrorCategory.NETWORK,
            ErrorSeverity.HIGH,
            COMPONENT,
        )
        return self.recover()

    def recover(self) -> bool:
        """Re-apply interception.  Bounded by ``max_reconnect_attempts``.

        Returns False once the error handler says the component should be
        disabled or the attempts are exhausted.
        """
        if not self._active:
            return False
        if self._errors.should_disable_component(COMPONENT):
            if not self._disabled:
                logger.error("Network monitor disabled after repeated errors")
            self._disabled = True
            return False
        if self._reconnect_attempts >= self._config.max_reconnect_attempts:
            logger.warning("Network monitor recovery exhausted (%d attempts)", self._reconnect_attempts)
            return False
        self._reconnect_attempts += 1
        self._unpatch_all()
        self._degraded = False
        for target in self._targets:
            self._patch(target)
        if self._degraded:
            return False
        self._breaker.reset()
        self._monitoring_errors = 0
        self._paused = False
        self._errors.resolve(COMPONENT)
        logger.info("Network monitor recovered (attempt %d)", self._reconnect_attempts)
        if self._bus is not None:
            self._bus.publish(EventType.COMPONENT_RECOVERED, COMPONENT)
        return True

    def get_health_status(self) -> HealthStatus:
        return HealthStatus(
            is_active=self._active,
            is_paused=self._paused,
            degraded=self._degraded,
            disabled=self._disabled,
            circuit_state=self._breaker.state,
            error_count=self._monitoring_errors,
            last_health_check=self._last_health_check,
            reconnect_attempts=self._reconnect_attempts,
            patched_targets=len(self._patches),
        )

    # -- Queries --

    def get_all_activity(self) -> list[NetworkActivityRecord]:
        """Requests merged with their responses/errors, oldest first."""
        responses = {r.id: r for r in self._responses.snapshot()}
        failures = {f.id: f for f in self._failures.snapshot()}
        return [self._merge(req, responses.get(req.id), failures.get(req.id)) for req in self._requests.snapshot()]

    def get_recent_activity(self, window: float = 60.0, limit: int | None = None) -> list[NetworkActivityRecord]:
        cutoff = self._clock() - window
        records = [r for r in self.get_all_activity() if r.timestamp >= cutoff]
        return records[-limit:] if limit else records

    @staticmethod
    def _merge(
        req: NetworkRequest, resp: NetworkResponse | None, failure: NetworkErrorRecord | None
    ) -> NetworkActivityRecord:
        end = resp.timestamp if resp else failure.timestamp if failure else None
        return NetworkActivityRecord(
            id=req.id,
            url=req.url,
            method=req.method,
            status=resp.status if resp else None,
            status_text=resp.status_text if resp else "",
            type=req.type,
            headers=req.headers,
            timing=RequestTiming(
                start=req.timestamp,
                end=end,
                duration_ms=resp.response_time if resp else None,
            ),
            timestamp=req.timestamp,
            size=resp.size if resp else 0,
            error=f"{failure.error_type.value}: {failure.message}" if failure else None,
        )

    def get_statistics(self) -> NetworkStatistics:
        requests = self._requests.snapshot()
        responses = self._responses.snapshot()
        by_type: dict[str, int] = {}
        for req in requests:
            by_type[req.type.value] = by_type.get(req.type.value, 0) + 1
        successful = sum(1 for r in responses if 200 <= r.status < 400)
        avg = sum(r.response_time for r in responses) / len(responses) if responses else 0.0
        return NetworkStatistics(
            total_requests=len(requests),
            total_responses=len(responses),
            total_errors=len(self._failures),
            success_rate=(successful / len(requests) * 100.0) if requests else 0.0,
            average_response_time=avg,
            requests_by_type=by_type,
        )

    def get_summary(self, limit: int | None = None) -> NetworkSummary:
        limit = limit or self._config.summary_limit
        activity = self.get_all_activity()
        endpoints: dict[str, None] = {}
        for record in activity:
            path = urlsplit(record.url).path
            if _API_PATH_RE.search(path):
                endpoints.setdefault(f"{record.method} {path}", None)
        return NetworkSummary(
            recent=tuple(activity[-limit:]),
            statistics=self.get_statistics(),
            api_endpoints=tuple(endpoints),
            errors=tuple(r for r in activity if r.is_error)[-limit:],
        )

    def clear_data(self) -> None:
        self._requests.clear()
        self._responses.clear()
        self._failures.clear()
        self._in_flight.clear()
