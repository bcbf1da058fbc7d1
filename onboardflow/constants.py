"""Default limits and timeouts for onboarding workflows."""

DAY = 24 * 60 * 60

DEFAULT_STAGE_TIMEOUT = 14 * DAY
DEFAULT_REVIEW_TIMEOUT = 7 * DAY
DEFAULT_MANDATE_RETRY_TIMEOUT = 7 * DAY
DEFAULT_PAUSE_TIMEOUT = 30 * DAY

DEFAULT_MAX_MANDATE_RETRIES = 8
DEFAULT_MAX_ATTEMPTS = 3

# amounts are in cents
DEFAULT_OVERLIMIT_THRESHOLD = 500_000_00

DEFAULT_LEASE_TTL = 30.0
DEFAULT_LEASE_WAIT = 10.0

SIGNAL_TOPIC = "onboarding"
