"""Configuration settings for the Spread Controller."""

# CRD Settings
CRD_GROUP = "spread.fitzek.eu"
CRD_VERSION = "v1alpha1"
CRD_PLURAL = "spreadpolicies"
CRD_KIND = "SpreadPolicy"

# Controller annotations
OWNER_ANNOTATION = "spread.fitzek.eu/owner"
AVOID_DOMAIN_ANNOTATION = "spread.fitzek.eu/avoid-domain"
PREFERRED_DOMAIN_ANNOTATION = "spread.fitzek.eu/preferred-domain"
ANTI_AFFINITY_ANNOTATION = "spread.fitzek.eu/anti-affinity"
LAST_RECONCILED_ANNOTATION = "spread.fitzek.eu/last-reconciled-at"

# Policy defaults
DEFAULT_ACTION_MODE = "Advisory"
DEFAULT_MAX_SKEW = 1
DEFAULT_WEIGHTED_TOLERANCE = 0
DEFAULT_MAX_ACTIONS_PER_RECONCILE = 10

# Watch settings
WATCH_TIMEOUT_SECONDS = 300
RESYNC_PERIOD_SECONDS = 300
CACHE_DEGRADED_AFTER_FAILURES = 3
CACHE_MAX_RECONNECT_ATTEMPTS = 10
CACHE_BACKOFF_MAX_SECONDS = 30.0

# Work queue settings
DEFAULT_WORKERS = 2
QUEUE_BASE_DELAY_SECONDS = 0.5
QUEUE_MAX_DELAY_SECONDS = 300.0
QUEUE_QPS = 10.0
QUEUE_BURST = 100

# Executor settings
EXECUTOR_MAX_ATTEMPTS = 5
EXECUTOR_BACKOFF_SECONDS = 0.5
EXECUTOR_BACKOFF_MAX_SECONDS = 10.0
API_REQUEST_TIMEOUT_SECONDS = 30
SHUTDOWN_GRACE_SECONDS = 30.0

# Leader election settings
LEASE_NAME = "spread-controller-leader"
LEASE_NAMESPACE = "kube-system"
LEASE_DURATION_SECONDS = 15
LEASE_RENEW_DEADLINE_SECONDS = 10
LEASE_RETRY_PERIOD_SECONDS = 2
LEASE_MAX_API_FAILURES = 30
