from typing import Final
from enum import StrEnum


class Strategy(StrEnum):
    BURST       = "burst"
    STEADY      = "steady"
    SATURATION  = "saturation"


class Outcome(StrEnum):
    ACCEPTED   = "ACCEPTED"
    REJECTED   = "REJECTED"
    TIMEOUT    = "TIMEOUT"
    FAILED_NET = "FAILED_NET"


class Completion(StrEnum):
    ALL       = "all"        # every handle resolved
    THRESHOLD = "threshold"  # completion fraction reached on a sampled set
    TIMEOUT   = "timeout"    # deadline hit, remainder unresolved
    EMPTY     = "empty"      # nothing to wait for


class Backend(StrEnum):
    EVM    = "evm"
    XRPL   = "xrpl"
    MEMORY = "memory"


# Submission
TARGET_COUNT = 1000
SUBMIT_TIMEOUT = 20.0
RPC_TIMEOUT = 5.0
SEND_TIMEOUT = 300.0
FAILURE_SAMPLES = 5

# Saturation
INITIAL_FILL = 8000
FILL_CHUNK = 100
REFILL_INTERVAL = 1.0
REFILL_CAP = 4000
PER_BLOCK_ESTIMATE = 1000

# Polling
POLL_INTERVAL = 2.0
POLL_TIMEOUT = 120.0
COMPLETION_FRACTION = 0.95
SAMPLING_THRESHOLD = 1000
SAMPLE_CAP = 1000
POLL_CONCURRENCY = 200

# Capacity
TRANSFER_COST: Final = 21_000
MAX_BLOCKS_ANALYZED = 200
BLOCK_TIME_EXACT = 0.01
BLOCK_TIME_GOOD = 0.1

# Invariants
RATIO_TOLERANCE = 0.10

UNDEFINED: Final = "undefined"

__all__ = [
    "BLOCK_TIME_EXACT",
    "BLOCK_TIME_GOOD",
    "COMPLETION_FRACTION",
    "FAILURE_SAMPLES",
    "FILL_CHUNK",
    "INITIAL_FILL",
    "MAX_BLOCKS_ANALYZED",
    "PER_BLOCK_ESTIMATE",
    "POLL_CONCURRENCY",
    "POLL_INTERVAL",
    "POLL_TIMEOUT",
    "RATIO_TOLERANCE",
    "REFILL_CAP",
    "REFILL_INTERVAL",
    "RPC_TIMEOUT",
    "SAMPLE_CAP",
    "SAMPLING_THRESHOLD",
    "TARGET_COUNT",
    "SEND_TIMEOUT",
    "SUBMIT_TIMEOUT",
    "TRANSFER_COST",
    "UNDEFINED",

    ######
    "Backend",
    "Completion",
    "Outcome",
    "Strategy",
]
