from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP requests that ended with a 5xx status",
    ["method", "path", "status"],
)

# outcome: processed | duplicate | ignored | failed | rejected
WEBHOOK_EVENTS = Counter(
    "webhook_events_total",
    "Payment processor webhook events by type and outcome",
    ["event_type", "outcome"],
)
WEBHOOK_PROCESSING_LATENCY = Histogram(
    "webhook_processing_duration_seconds",
    "Time spent applying a webhook event inside its transaction",
    ["event_type"],
)

# result: hit | miss | error
ENTITLEMENT_CACHE = Counter(
    "entitlement_cache_requests_total",
    "Entitlement cache lookups by result",
    ["result"],
)
USAGE_RECORDED = Counter(
    "entitlement_usage_recorded_total",
    "Units of usage recorded against entitlements",
)
