"""Safari Pipeline Worker Utilities"""

from .db import DatabaseClient, get_db
from .execution import ExecutionTrigger
from .http_client import ApiRequest, ApiResponse, RetryingApiClient
from .media import ImageHandler, MediaStorage, VideoConverter, VideoHandler
from .openrouter import ImageLabeler, OpenRouterClient

__all__ = [
    'DatabaseClient',
    'get_db',
    'ExecutionTrigger',
    'ApiRequest',
    'ApiResponse',
    'RetryingApiClient',
    'ImageHandler',
    'MediaStorage',
    'VideoConverter',
    'VideoHandler',
    'ImageLabeler',
    'OpenRouterClient',
]
