"""
System Constants and Enumerations

Names and codes shared by the dispatcher and the worker. Both sides must agree
on every value here, so none of it is configurable.
"""

from enum import Enum

# ============================================================================
# Queue Topology
# ============================================================================


class QueueSuffix(str, Enum):
    """
    Suffixes of the per-request queues.

    Full name: {base_name}/{request_id}/{suffix}
    """

    RESPONSE = "response"
    UPLOAD_PROGRESS = "upload-progress"
    DOWNLOAD_PROGRESS = "download-progress"
    CANCEL = "cancel"


QUEUE_NAME_SEPARATOR = "/"

# Only the latest (and by protocol the only) response is retained
RESPONSE_QUEUE_MAX_LENGTH = 1


# ============================================================================
# Outcomes
# ============================================================================


class OutcomeKind(str, Enum):
    """Discriminator carried by every outcome placed on a response queue."""

    RESPONSE = "response"
    ERROR = "error"
    CANCELED = "canceled"
    DROPPED = "dropped"


class ErrorCode(str, Enum):
    """
    Error codes attached to RequestError instances.

    Mirrors the codes HTTP client libraries commonly expose so callers can
    branch on them the same way for direct and queued requests.
    """

    BAD_REQUEST = "ERR_BAD_REQUEST"
    BAD_RESPONSE = "ERR_BAD_RESPONSE"
    CANCELED = "ERR_CANCELED"
    NETWORK = "ERR_NETWORK"
    TIMEOUT = "ECONNABORTED"
    DESERIALIZATION = "ERR_DESERIALIZATION"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    WORKER = "ERR_WORKER"


# ============================================================================
# Compatibility Gate
# ============================================================================

# Synthetic status used for options that cannot cross the process boundary
CONFIG_UNSUPPORTED_STATUS = 406

STREAM_RESPONSE_TYPE = "stream"


# ============================================================================
# Wire
# ============================================================================

# Default upload chunk size for progress reporting
UPLOAD_CHUNK_SIZE = 64 * 1024
