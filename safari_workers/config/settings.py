"""
Environment configuration for the Safari pipeline workers.

All settings come from environment variables (a local .env is loaded for
development). Numeric values fall back to the defaults used in production.
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return int(value)


# Connections
DATABASE_URL = os.environ.get('DATABASE_URL')
REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379')
TRIGGER_SECRET = os.environ.get('TRIGGER_SECRET', '')

# OpenRouter (image labeling)
OPENROUTER_API_KEY = os.environ.get('OPENROUTER_API_KEY')
OPENROUTER_BASE_URL = os.environ.get('OPENROUTER_BASE_URL', 'https://openrouter.ai/api/v1')
OPENROUTER_MODEL = os.environ.get('OPENROUTER_MODEL', 'openai/gpt-4o')
OPENROUTER_REFERER = os.environ.get('OPENROUTER_REFERER', 'https://kiuli.com')

# Media sources and hosting
SOURCE_CDN_BASE = os.environ.get('SOURCE_CDN_BASE', 'https://dj1cfrkz8wfyi.cloudfront.net')
CLOUDINARY_URL = os.environ.get('CLOUDINARY_URL')
CLOUDINARY_FOLDER = os.environ.get('CLOUDINARY_FOLDER', 'itineraries')
FFMPEG_PATH = os.environ.get('FFMPEG_PATH', 'ffmpeg')

# Batch processing
BATCH_SIZE = _int_env('BATCH_SIZE', 10)              # Items per invocation
CONCURRENT = _int_env('CONCURRENT', 3)               # Simultaneous outbound API calls
STALE_PROCESSING_SECONDS = _int_env('STALE_PROCESSING_SECONDS', 900)
REQUEUE_DELAY_SECONDS = _int_env('REQUEUE_DELAY_SECONDS', 60)  # Wait before re-checking items in flight elsewhere

# Retry policy for outbound calls
MAX_RETRIES = _int_env('MAX_RETRIES', 5)
BASE_DELAY_MS = _int_env('BASE_DELAY_MS', 3000)
API_TIMEOUT_SECONDS = _int_env('API_TIMEOUT_SECONDS', 60)
FFMPEG_TIMEOUT_SECONDS = _int_env('FFMPEG_TIMEOUT_SECONDS', 300)
UPLOAD_TIMEOUT_SECONDS = _int_env('UPLOAD_TIMEOUT_SECONDS', 120)

# Execution triggers (RQ function paths resolved by the worker)
MEDIA_QUEUE = os.environ.get('MEDIA_QUEUE', 'default')
CONTROL_QUEUE = os.environ.get('CONTROL_QUEUE', 'high')
MEDIA_BATCH_FUNC = os.environ.get('MEDIA_BATCH_FUNC', 'safari_workers.jobs.process_media.run_media_batch')
ORCHESTRATOR_FUNC = os.environ.get('ORCHESTRATOR_FUNC', 'orchestrator.run_orchestrator')
NEXT_STAGE_FUNC = os.environ.get('NEXT_STAGE_FUNC', '')
JOB_TIMEOUT = os.environ.get('JOB_TIMEOUT', '30m')
