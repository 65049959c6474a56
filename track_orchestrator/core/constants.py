"""
Global constants for the Track Orchestrator.

Constants used by several modules live here. Module-specific constants
belong in their own files.
"""

# System version
VERSION = "1.0.0"

# Admission timeouts (ms)
DEFAULT_TRACK_ACQUIRE_TIMEOUT_MS = 30000
DEFAULT_CALL_ACQUIRE_TIMEOUT_MS = 15000

# Fixed wait before a worker retries a refused track slot (ms)
TRACK_SLOT_RETRY_DELAY_MS = 1000

# Burst allowance of the call-level rate limiter
MAX_BURST_TOKENS = 10

# Unit-level error codes
ERROR_CODE_CANCELLED = "CANCELLED"
ERROR_CODE_CIRCUIT_BREAKER = "CIRCUIT_BREAKER"
ERROR_CODE_UNEXPECTED = "UNEXPECTED_ERROR"
ERROR_CODE_JOB_TIMEOUT = "JOB_TIMEOUT"
ERROR_CODE_RATE_LIMITED = "RATE_LIMITED"

# HTTP API
API_MAX_TRACKS_PER_REQUEST = 6
API_ESTIMATED_MS_PER_RACE = 5000
