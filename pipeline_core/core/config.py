import os

# Database Configuration
# Postgres in deployed environments; sqlite://:memory: works for local runs
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/pipeline_db")

# Application Metadata
PROJECT_NAME = "Claim Pipeline Core"
VERSION = "1.0.0"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Outbox Relay Configuration
POLLING_INTERVAL = float(os.getenv("POLLING_INTERVAL", 1)) # Relay sweeps the outbox every N seconds
OUTBOX_MAX_RETRIES = int(os.getenv("OUTBOX_MAX_RETRIES", 5)) # Failed publishes before DEAD_LETTER
BATCH_SIZE = int(os.getenv("BATCH_SIZE", 50)) # How many entries to claim per sweep
OUTBOX_CLAIM_TIMEOUT_SECONDS = int(os.getenv("OUTBOX_CLAIM_TIMEOUT_SECONDS", 300)) # Abandoned PROCESSING claims go back to PENDING

# Sequence Ledger
LEDGER_APPEND_ATTEMPTS = int(os.getenv("LEDGER_APPEND_ATTEMPTS", 5)) # Retries when a concurrent writer took our sequence number

# Idempotency Guard
IDEMPOTENCY_TTL_SECONDS = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", 86400)) # 24 hours

# Retry Scanner
RETRY_SCAN_INTERVAL = float(os.getenv("RETRY_SCAN_INTERVAL", 30))
RETRY_SCAN_WINDOW_MINUTES = int(os.getenv("RETRY_SCAN_WINDOW_MINUTES", 60))
RETRY_BACKOFF_SECONDS = int(os.getenv("RETRY_BACKOFF_SECONDS", 60))
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", 3))
# Comma-separated tenant list; unset or empty scans every tenant
RETRY_TENANTS = [t.strip() for t in os.getenv("RETRY_TENANTS", "").split(",") if t.strip()]

# Request identifiers
REQUEST_ID_PREFIX = os.getenv("REQUEST_ID_PREFIX", "REQ")

# Queue service
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
SQS_ENDPOINT_URL = os.getenv("SQS_ENDPOINT_URL") or None # LocalStack / ElasticMQ override

# Stage -> queue routing for the pipeline workers
STAGE_QUEUES = {
    "PARSING": os.getenv("QUEUE_REQUEST_PARSER", "pipeline-queue-request-parser"),
    "ATTACHMENT": os.getenv("QUEUE_ATTACHMENT_HANDLER", "pipeline-queue-attachment-handler"),
    "VALIDATION": os.getenv("QUEUE_BUSINESS_VALIDATOR", "pipeline-queue-business-validator"),
    "ENRICHMENT": os.getenv("QUEUE_REQUEST_ENRICHER", "pipeline-queue-request-enricher"),
    "CONVERSION": os.getenv("QUEUE_CANONICAL_MAPPER", "pipeline-queue-canonical-mapper"),
    "SUBMISSION": os.getenv("QUEUE_API_ORCHESTRATOR", "pipeline-queue-api-orchestrator"),
    "CALLBACK": os.getenv("QUEUE_CALLBACK_HANDLER", "pipeline-queue-callback-handler"),
    "RESPONSE": os.getenv("QUEUE_RESPONSE_BUILDER", "pipeline-queue-response-builder"),
}
