import os
from dotenv import load_dotenv

# Load environment variables from .env file(s)
# 1) Project root .env
load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


def _int_env(name: str, default: int) -> int:
    """Read an integer setting, falling back to the default on junk values."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        return default


data_dir = os.environ.get('BOOKSHELF_DATA_DIR') or os.path.join(basedir, 'data')

# 2) Overlay data/.env so settings saved at runtime persist via the mounted volume
data_env_path = os.path.join(data_dir, '.env')
if os.path.exists(data_env_path):
    load_dotenv(dotenv_path=data_env_path, override=True)


class Config:
    # Expose data directory path for other modules
    DATA_DIR = data_dir

    # Storage backend: 'kuzu' (embedded, persistent) or 'memory' (ephemeral)
    STORE_BACKEND = os.environ.get('STORE_BACKEND', 'kuzu').lower()
    KUZU_DB_PATH = os.environ.get('KUZU_DB_PATH') or os.path.join(data_dir, 'kuzu')

    # Per-batch write ceiling enforced by the store
    STORE_BATCH_LIMIT = _int_env('STORE_BATCH_LIMIT', 500)
    # Import commits books in chunks no larger than the batch ceiling
    IMPORT_CHUNK_SIZE = min(_int_env('IMPORT_CHUNK_SIZE', 500), STORE_BATCH_LIMIT)

    # Entity caches
    CACHE_TTL_SECONDS = _int_env('CACHE_TTL_SECONDS', 300)  # 5 minutes
    CACHE_HINTS_PATH = os.environ.get('CACHE_HINTS_PATH', os.path.join(data_dir, 'cache_hints.json'))

    # Bin
    BIN_RETENTION_DAYS = _int_env('BIN_RETENTION_DAYS', 30)

    # Single-book duplicate check scans at most this many books by title/author
    DUPLICATE_CHECK_LIMIT = _int_env('DUPLICATE_CHECK_LIMIT', 200)

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'ERROR').upper()


class TestingConfig(Config):
    STORE_BACKEND = 'memory'
    CACHE_HINTS_PATH = ''
    LOG_LEVEL = 'DEBUG'
