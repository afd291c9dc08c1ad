from prometheus_client import Counter, Gauge, Histogram

ATTEMPT_OUTCOMES = Counter(
    "payment_attempt_outcomes_total",
    "Gateway outcomes of payment attempts",
    ["outcome"],  # success | business_failure | plugin_exception
)

ATTEMPT_TRANSITIONS = Counter(
    "payment_attempt_transitions_total",
    "Attempt state transitions recorded by the scheduler",
    ["state"],  # SUCCESS | RETRIED | ABORTED
)

RETRIES_FIRED = Counter(
    "payment_retries_fired_total",
    "Due retries dispatched by the background trigger",
    ["status"],  # executed | duplicate | error
)

STALE_TRANSITIONS = Counter(
    "payment_attempt_stale_transitions_total",
    "Compare-and-set transitions that lost a race",
)

POLL_DURATION = Histogram(
    "payment_retry_poll_duration_seconds",
    "Duration of one retry trigger cycle, gateway calls included",
    buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

CIRCUIT_STATE = Gauge(
    "payment_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
)

PENDING_RECOVERED = Counter(
    "payment_attempt_pending_recovered_total",
    "PENDING attempts past their lease completed as plugin failures",
    ["status"],  # recovered | raced | error
)
