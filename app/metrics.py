from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP requests that ended in a 5xx",
    ["method", "path", "status"],
)

WEBHOOK_EVENTS = Counter(
    "payment_webhook_events_total",
    "Inbound payment events by type and outcome",
    ["event_type", "outcome"],
)
TASK_RUNS = Counter(
    "worker_task_runs_total",
    "Worker task invocations by task name and outcome",
    ["task_name", "outcome"],
)
ENQUEUE_FAILURES = Counter(
    "provisioning_enqueue_failures_total",
    "Provisioning tasks that could not be submitted to the queue",
)
