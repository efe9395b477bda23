"""Shared default constants for the hopper library."""

# Version tag stamped on every task; consumers reject any other value.
TASK_PROTOCOL_VERSION: int = 1

DEFAULT_AMQP_URL: str = 'amqp://localhost'
DEFAULT_EXCHANGE_NAME: str = 'worker-exchange'

# Producer-level retry defaults, used when a task leaves them unset.
DEFAULT_GLOBAL_MAX_RETRY: int = 0
DEFAULT_GLOBAL_INIT_DELAY_MS: int = 100

# Per task name in-flight ceiling when TaskMeta.concurrency is unset.
DEFAULT_GLOBAL_CONCURRENCY: int = 256

# Holding queue delays are rounded up to a whole number of buckets so that
# retries of similar magnitude share one queue.
DEFAULT_DELAY_BUCKET_MS: int = 1_000

# Extra lifetime of an idle holding queue beyond its message TTL.
DELAY_QUEUE_IDLE_EXPIRY_MS: int = 60_000
