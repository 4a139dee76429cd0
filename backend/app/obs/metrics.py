"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"sehra_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"sehra_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"sehra_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"sehra_socketio_events_total",
	"Socket.IO events handled per namespace",
	["namespace", "event"],
)

SESSIONS_ONLINE = Gauge(
	"sehra_messaging_sessions_online",
	"Users holding at least one live push connection",
)

MESSAGES_SENT = Counter(
	"sehra_messages_sent_total",
	"Messages persisted",
	["message_type"],
)

MESSAGES_READ = Counter(
	"sehra_messages_read_total",
	"Messages flipped to read",
)

PUSH_OUTCOMES = Counter(
	"sehra_push_outcomes_total",
	"Push attempts per event and outcome",
	["event", "result"],
)

STORAGE_ERRORS = Counter(
	"sehra_message_store_errors_total",
	"Message store operations that failed on storage availability",
	["operation"],
)

RATE_LIMITED_EVENTS = Counter(
	"sehra_rate_limited_total",
	"Events dropped due to rate limiting",
	["kind"],
)

IDEMPOTENCY_OUTCOMES = Counter(
	"sehra_idempotency_total",
	"Idempotency key lookups",
	["result"],
)

REDIS_UP = Gauge("sehra_redis_up", "Redis readiness (1 up, 0 down)")
POSTGRES_UP = Gauge("sehra_postgres_up", "Postgres readiness (1 up, 0 down)")


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def set_sessions_online(count: int) -> None:
	SESSIONS_ONLINE.set(count)


# message_type is client supplied; anything outside this set is reported as "other".
_MESSAGE_TYPE_LABELS = frozenset({"text"})


def inc_message_sent(message_type: str) -> None:
	label = message_type if message_type in _MESSAGE_TYPE_LABELS else "other"
	MESSAGES_SENT.labels(message_type=label).inc()


def inc_messages_read(count: int) -> None:
	if count > 0:
		MESSAGES_READ.inc(count)


def push_outcome(event: str, result: str) -> None:
	PUSH_OUTCOMES.labels(event=event, result=result).inc()


def storage_error(operation: str) -> None:
	STORAGE_ERRORS.labels(operation=operation).inc()


def rate_limited(kind: str) -> None:
	RATE_LIMITED_EVENTS.labels(kind=kind).inc()


def inc_idem_hit() -> None:
	IDEMPOTENCY_OUTCOMES.labels(result="hit").inc()


def inc_idem_miss() -> None:
	IDEMPOTENCY_OUTCOMES.labels(result="miss").inc()


def inc_idem_conflict() -> None:
	IDEMPOTENCY_OUTCOMES.labels(result="conflict").inc()


def inc_idem_unavail() -> None:
	IDEMPOTENCY_OUTCOMES.labels(result="unavailable").inc()


def mark_redis(ok: bool) -> None:
	REDIS_UP.set(1 if ok else 0)


def mark_postgres(ok: bool) -> None:
	POSTGRES_UP.set(1 if ok else 0)
