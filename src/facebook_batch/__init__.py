from .client import GraphBatchClient as GraphBatchClient
from .exceptions import BatchRequestError as BatchRequestError
from .exceptions import get_error_message as get_error_message
from .exceptions import is_error_613 as is_error_613
from .models import BatchHeader as BatchHeader
from .models import BatchRequest as BatchRequest
from .models import BatchRequestErrorInfo as BatchRequestErrorInfo
from .models import BatchResponse as BatchResponse
from .queue import MAX_BATCH_SIZE as MAX_BATCH_SIZE
from .queue import BatchQueue as BatchQueue

__all__ = [
    "BatchQueue",
    "BatchRequestError",
    "GraphBatchClient",
    "BatchRequest",
    "BatchResponse",
    "BatchHeader",
    "BatchRequestErrorInfo",
    "MAX_BATCH_SIZE",
    "get_error_message",
    "is_error_613",
]
