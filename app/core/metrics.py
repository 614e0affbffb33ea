"""
Prometheus metrics shared by the HTTP layer and the services.
"""

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

REPORTS_CREATED = Counter(
    'reports_created_total',
    'Total reports created',
    ['category']
)

STATUS_TRANSITIONS = Counter(
    'report_status_transitions_total',
    'Report status changes applied by admins',
    ['from_status', 'to_status']
)

AI_REQUESTS = Counter(
    'ai_requests_total',
    'Calls made to the generative model',
    ['operation', 'status']
)

AI_REQUEST_DURATION = Histogram(
    'ai_request_duration_seconds',
    'Generative model call duration in seconds',
    ['operation']
)

CHAT_MESSAGES = Counter(
    'chat_messages_total',
    'Chat messages stored',
    ['sender_role']
)
