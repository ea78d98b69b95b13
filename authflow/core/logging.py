"""Protocol logging for SAML exchanges.

Two kinds of traffic are recorded. Front-channel messages (AuthnRequest,
Response, LogoutRequest/LogoutResponse) are logged as milestones when they
are built or received. Back-channel HTTP exchanges, i.e. metadata fetches
and SOAP logout propagation, go through LoggingClient and are grouped per
flow on the calling thread.

Log levels:
- ERROR: only failures
- INFO: message milestones and one line per HTTP exchange
- DEBUG: adds headers and timing
- TRACE: adds message bodies; raw values only when trace is explicitly enabled
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum
from typing import Any

import httpx

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

logger = logging.getLogger("authflow.protocol")

REDACTED = "[REDACTED]"
BODY_PREVIEW_CHARS = 2000


class LogLevel(IntEnum):
    """Protocol logging levels."""

    ERROR = logging.ERROR
    INFO = logging.INFO
    DEBUG = logging.DEBUG
    TRACE = TRACE


def _query_param(name: str, flags: int = 0) -> tuple[re.Pattern[str], str]:
    return re.compile(rf"({name}=)[^&\s]+", flags), rf"\1{REDACTED}"


def _xml_text(element: str) -> tuple[re.Pattern[str], str]:
    return re.compile(rf"(<(?:\w+:)?{element}[^>]*>)[^<]+(</)", re.IGNORECASE), rf"\1{REDACTED}\2"


def _json_field(name: str) -> tuple[re.Pattern[str], str]:
    return re.compile(rf'"({name})"\s*:\s*"[^"]+"', re.IGNORECASE), rf'"\1": "{REDACTED}"'


def _header(name: str) -> tuple[re.Pattern[str], str]:
    return re.compile(rf"({name}:\s*)[^\r\n]+", re.IGNORECASE), rf"\1{REDACTED}"


SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    _query_param("SAMLRequest", re.IGNORECASE),
    _query_param("SAMLResponse", re.IGNORECASE),
    _query_param("Signature"),
    _xml_text("SignatureValue"),
    _xml_text("CipherValue"),
    (re.compile(r"(Authorization:\s*\w+\s+)\S+", re.IGNORECASE), rf"\1{REDACTED}"),
    (re.compile(r"^((?:Bearer|Basic)\s+)\S+", re.IGNORECASE), rf"\1{REDACTED}"),
    _header("Cookie"),
    _header("Set-Cookie"),
    (re.compile(r"(authflow_session=)[^;\s]+"), rf"\1{REDACTED}"),
    _json_field("session_id"),
    _json_field("csrf_token"),
    _json_field("password"),
]


def redact_sensitive(text: str) -> str:
    """Mask SAML payloads, signatures, credentials and session identifiers in ``text``."""
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _redact_header(name: str, value: str) -> str:
    # Header patterns are anchored on "Name:", so redact the joined line.
    return redact_sensitive(f"{name}: {value}").split(": ", 1)[1]


def _preview(body: str) -> str:
    if len(body) <= BODY_PREVIEW_CHARS:
        return body
    return body[:BODY_PREVIEW_CHARS] + "..."


@dataclass
class HTTPExchange:
    """One back-channel request and its response (or transport failure)."""

    id: str
    timestamp: datetime
    method: str
    url: str
    request_headers: dict[str, str]
    request_body: str | None = None
    response_status: int | None = None
    response_headers: dict[str, str] = field(default_factory=dict)
    response_body: str | None = None
    duration_ms: float | None = None
    error: str | None = None

    def to_dict(self, include_sensitive: bool = False) -> dict[str, Any]:
        """Serialize the exchange, redacted unless ``include_sensitive`` is set."""
        text = (lambda v: v) if include_sensitive else redact_sensitive
        headers = (lambda k, v: v) if include_sensitive else _redact_header

        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "method": self.method,
            "url": text(self.url),
            "request_headers": {k: headers(k, v) for k, v in self.request_headers.items()},
            "request_body": None if self.request_body is None else text(self.request_body),
            "response_status": self.response_status,
            "response_headers": {k: headers(k, v) for k, v in self.response_headers.items()},
            "response_body": None if self.response_body is None else text(self.response_body),
            "duration_ms": self.duration_ms,
            "error": self.error,
        }

    def format_log(self, level: LogLevel, include_sensitive: bool = False) -> str:
        """Render the exchange as a multi-line log entry.

        Headers are included from DEBUG down, bodies only at TRACE.
        """
        data = self.to_dict(include_sensitive)
        lines = [f"HTTP {self.method} {data['url']} -> {self.response_status or 'ERROR'}"]
        if self.duration_ms is not None:
            lines.append(f"  Duration: {self.duration_ms:.1f}ms")
        if self.error:
            lines.append(f"  Error: {self.error}")

        if level <= LogLevel.DEBUG:
            for title, headers in (("Request Headers", data["request_headers"]),
                                   ("Response Headers", data["response_headers"])):
                if headers or title == "Request Headers":
                    lines.append(f"  {title}:")
                    lines.extend(f"    {name}: {value}" for name, value in headers.items())

        if level <= LogLevel.TRACE:
            for title, body in (("Request Body", data["request_body"]), ("Response Body", data["response_body"])):
                if body:
                    lines += [f"  {title}:", f"    {_preview(body)}"]

        return "\n".join(lines)


@dataclass
class ProtocolLog:
    """The back-channel exchanges of one flow, e.g. a metadata refresh."""

    flow_id: str
    flow_type: str
    exchanges: list[HTTPExchange] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    def add_exchange(self, exchange: HTTPExchange) -> None:
        self.exchanges.append(exchange)

    def complete(self) -> None:
        self.completed_at = datetime.now(UTC)

    def to_dict(self, include_sensitive: bool = False) -> dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "flow_type": self.flow_type,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "exchanges": [e.to_dict(include_sensitive) for e in self.exchanges],
            "exchange_count": len(self.exchanges),
        }


class ProtocolLogger:
    """Level-aware logger for SAML traffic.

    The current flow log lives in thread-local storage, so concurrent
    requests served by different workers never mix their exchanges.
    TRACE is honoured only with ``trace_enabled``; otherwise it degrades
    to DEBUG.
    """

    def __init__(self, level: LogLevel = LogLevel.INFO, trace_enabled: bool = False) -> None:
        self._level = level
        self._trace_enabled = trace_enabled
        self._local = threading.local()

    @property
    def level(self) -> LogLevel:
        return self._level

    @level.setter
    def level(self, value: LogLevel) -> None:
        self._level = value

    @property
    def trace_enabled(self) -> bool:
        return self._trace_enabled

    @property
    def effective_level(self) -> LogLevel:
        if self._level == LogLevel.TRACE and not self._trace_enabled:
            return LogLevel.DEBUG
        return self._level

    @property
    def current_log(self) -> ProtocolLog | None:
        """The flow log of the calling thread, if any."""
        return getattr(self._local, "log", None)

    def start_flow(self, flow_id: str, flow_type: str) -> ProtocolLog:
        """Begin collecting exchanges for ``flow_id`` on the calling thread."""
        self._local.log = ProtocolLog(flow_id=flow_id, flow_type=flow_type)
        logger.debug(f"Started {flow_type} flow {flow_id}")
        return self._local.log

    def end_flow(self) -> ProtocolLog | None:
        """Close the calling thread's flow and hand back its log."""
        log = self.current_log
        if log is None:
            return None
        log.complete()
        self._local.log = None
        logger.debug(f"Finished {log.flow_type} flow {log.flow_id} with {len(log.exchanges)} exchange(s)")
        return log

    @contextmanager
    def flow(self, flow_id: str, flow_type: str) -> Iterator[ProtocolLog]:
        """Scope a flow to a ``with`` block."""
        log = self.start_flow(flow_id, flow_type)
        try:
            yield log
        finally:
            self.end_flow()

    def log_message(self, direction: str, message_type: str, message_id: str, xml: str | None = None) -> None:
        """Record a front-channel message; the XML itself only reaches the TRACE level.

        Args:
            direction: "sent" or "received".
            message_type: Element name, e.g. "AuthnRequest".
            message_id: The message's ID attribute.
            xml: Serialized message.
        """
        logger.info(f"SAML {message_type} {direction}: {message_id}")
        if xml and self.effective_level <= LogLevel.TRACE:
            logger.log(TRACE, xml if self._trace_enabled else redact_sensitive(xml))

    def log_exchange(self, exchange: HTTPExchange) -> None:
        """Attach ``exchange`` to the current flow and emit it at the configured detail."""
        if (log := self.current_log) is not None:
            log.add_exchange(exchange)

        effective = self.effective_level
        if effective <= LogLevel.INFO:
            raw = self._trace_enabled and self._level <= LogLevel.TRACE
            log_at = logging.DEBUG if effective <= LogLevel.DEBUG else logging.INFO
            logger.log(log_at, exchange.format_log(effective, raw))

        if exchange.error:
            logger.error(f"HTTP error: {exchange.method} {redact_sensitive(exchange.url)}: {exchange.error}")


def _decode_body(content: bytes) -> str | None:
    if not content:
        return None
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError:
        return "<binary content>"


class LoggingClient(httpx.Client):
    """httpx client whose every exchange is handed to a ProtocolLogger.

    Redirects are never followed: metadata and SOAP endpoints must answer
    at the configured location.
    """

    def __init__(self, protocol_logger: ProtocolLogger | None = None, **kwargs: Any) -> None:
        kwargs["follow_redirects"] = False
        super().__init__(**kwargs)
        self._protocol_logger = protocol_logger or get_protocol_logger()
        self._sequence = 0
        self._sequence_lock = threading.Lock()

    @property
    def protocol_logger(self) -> ProtocolLogger:
        return self._protocol_logger

    def _next_id(self) -> str:
        with self._sequence_lock:
            self._sequence += 1
            return f"http_{self._sequence:04d}"

    def send(self, request: httpx.Request, **kwargs: Any) -> httpx.Response:  # type: ignore[override]
        exchange = HTTPExchange(
            id=self._next_id(),
            timestamp=datetime.now(UTC),
            method=request.method,
            url=str(request.url),
            request_headers=dict(request.headers),
            request_body=_decode_body(request.content),
        )
        started = time.perf_counter()
        try:
            response = super().send(request, **kwargs)
            response.read()
        except httpx.HTTPError as e:
            exchange.error = f"{type(e).__name__}: {e}"
            raise
        else:
            exchange.response_status = response.status_code
            exchange.response_headers = dict(response.headers)
            exchange.response_body = response.text
            return response
        finally:
            exchange.duration_ms = (time.perf_counter() - started) * 1000
            self._protocol_logger.log_exchange(exchange)


_global_logger: ProtocolLogger | None = None


def get_protocol_logger() -> ProtocolLogger:
    """Return the process-wide protocol logger, creating an INFO one on first use."""
    global _global_logger
    if _global_logger is None:
        _global_logger = ProtocolLogger()
    return _global_logger


def set_protocol_logger(logger_instance: ProtocolLogger) -> None:
    global _global_logger
    _global_logger = logger_instance


def _parse_level(level: LogLevel | str) -> LogLevel:
    if isinstance(level, LogLevel):
        return level
    try:
        return LogLevel[level.upper()]
    except KeyError:
        return LogLevel.INFO


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    trace_enabled: bool = False,
    log_file: str | None = None,
    audit_file: str | None = None,
) -> ProtocolLogger:
    """Set up the ``authflow`` logger hierarchy and install a new protocol logger.

    Args:
        level: ERROR, INFO, DEBUG or TRACE, as a LogLevel or a name. Unknown names mean INFO.
        trace_enabled: Permit raw, unredacted message bodies at TRACE.
        log_file: Also write everything to this file.
        audit_file: Write audit events (``authflow.audit``) to this file as well.

    Returns:
        The installed ProtocolLogger.
    """
    resolved = _parse_level(level)
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def attach(target: logging.Logger, handler: logging.Handler, handler_level: int) -> None:
        handler.setLevel(handler_level)
        handler.setFormatter(formatter)
        target.addHandler(handler)

    root = logging.getLogger("authflow")
    root.setLevel(resolved)
    root.handlers.clear()
    attach(root, logging.StreamHandler(), resolved)
    if log_file:
        attach(root, logging.FileHandler(log_file), resolved)
    if audit_file:
        attach(logging.getLogger("authflow.audit"), logging.FileHandler(audit_file), logging.INFO)

    protocol_logger = ProtocolLogger(level=resolved, trace_enabled=trace_enabled)
    set_protocol_logger(protocol_logger)
    if trace_enabled:
        logger.warning("TRACE logging enabled: raw SAML messages will be written to the log")
    return protocol_logger
