# /shopchat/utils/metrics.py

from prometheus_client import Counter, Gauge, Histogram

# All Prometheus metrics used by the assistant, kept in one place.

# Conversation engine
tool_calls_counter = Counter('tool_calls_total', 'Tool calls dispatched', ['provider', 'status'])
llm_requests_counter = Counter('llm_requests_total', 'LLM requests', ['status'])
turn_iterations_histogram = Histogram(
    'turn_iterations', 'LLM rounds used per conversation turn', buckets=(1, 2, 3, 4, 5, 8, 13)
)
quantity_adjustments_counter = Counter('quantity_adjustments_total', 'Cart quantities rounded up to an increment')
auth_escalations_counter = Counter('auth_escalations_total', 'Customer account authorization escalations', ['outcome'])

# HTTP
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])

# Storage
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
cache_operations = Counter('cache_operations_total', 'Cache operations', ['operation', 'status'])

# Webhooks
webhook_signature_counter = Counter('webhook_signatures_total', 'Webhook signature verifications', ['status'])

# Upstream resilience (0 closed, 1 half open, 2 open)
circuit_breaker_state = Gauge('circuit_breaker_state', 'Circuit breaker state per upstream', ['upstream'])
