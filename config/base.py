# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_entity_list(value, default=("contacts", "chats")):
    """
    Parse a comma-separated entity list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized entity identifiers.
    """
    if not value:
        return tuple(default)

    seen = set()
    entities = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        entities.append(item)
    return tuple(entities) or tuple(default)


def _coerce_int(value, default, *, minimum=None, maximum=None):
    """Parse an integer env value, falling back to ``default`` and clamping to bounds."""
    try:
        number = int(value) if value not in (None, "") else default
    except ValueError:
        number = default
    if minimum is not None:
        number = max(minimum, number)
    if maximum is not None:
        number = min(maximum, number)
    return number


def _coerce_float(value, default, *, minimum=None, maximum=None):
    try:
        number = float(value) if value not in (None, "") else default
    except ValueError:
        number = default
    if minimum is not None:
        number = max(minimum, number)
    if maximum is not None:
        number = min(maximum, number)
    return number


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Sync feature flags
    SYNC_ENABLED = _coerce_bool(os.environ.get("SYNC_ENABLED"), default=True)
    SYNC_ENTITIES = _parse_entity_list(os.environ.get("SYNC_ENTITIES"))
    SYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("SYNC_WORKER_ENABLED"), default=False)

    # Sync tuning (user-facing values may be overridden via /sync/config)
    SYNC_INTERVAL_MINUTES = _coerce_int(os.environ.get("SYNC_INTERVAL_MINUTES"), 15, minimum=1, maximum=1440)
    SYNC_BATCH_SIZE = _coerce_int(os.environ.get("SYNC_BATCH_SIZE"), 1000, minimum=10, maximum=10000)
    SYNC_PAGE_SIZE = _coerce_int(os.environ.get("SYNC_PAGE_SIZE"), 100, minimum=1, maximum=1000)
    SYNC_AUTO_SYNC = _coerce_bool(os.environ.get("SYNC_AUTO_SYNC"), default=True)
    SYNC_FULL_SYNC = _coerce_bool(os.environ.get("SYNC_FULL_SYNC"), default=False)
    SYNC_RETRY_ATTEMPTS = _coerce_int(os.environ.get("SYNC_RETRY_ATTEMPTS"), 3, minimum=0, maximum=10)
    SYNC_RETRY_DELAY = _coerce_float(os.environ.get("SYNC_RETRY_DELAY"), 1.0, minimum=0.1, maximum=60.0)
    SYNC_RETRY_MAX_DELAY = _coerce_float(os.environ.get("SYNC_RETRY_MAX_DELAY"), 30.0, minimum=0.1)
    SYNC_REQUEST_TIMEOUT = _coerce_float(os.environ.get("SYNC_REQUEST_TIMEOUT"), 30.0, minimum=1.0)
    SYNC_MAX_PAGES_INCREMENTAL = _coerce_int(os.environ.get("SYNC_MAX_PAGES_INCREMENTAL"), 100, minimum=1)
    SYNC_MAX_TRANSFORM_ITERATIONS = _coerce_int(os.environ.get("SYNC_MAX_TRANSFORM_ITERATIONS"), 50, minimum=1)
    SYNC_MAX_PROCESSING_ATTEMPTS = _coerce_int(os.environ.get("SYNC_MAX_PROCESSING_ATTEMPTS"), 3, minimum=1)
    SYNC_AUTO_RETRY_FAILED = _coerce_bool(os.environ.get("SYNC_AUTO_RETRY_FAILED"), default=False)
    # Seconds a staged record may sit in processing before it counts as interrupted.
    SYNC_PROCESSING_STALE_SECONDS = _coerce_int(os.environ.get("SYNC_PROCESSING_STALE_SECONDS"), 600, minimum=0)
    SYNC_TASK_TIME_LIMIT = _coerce_int(os.environ.get("SYNC_TASK_TIME_LIMIT"), 60 * 60, minimum=60)
    SYNC_TASK_SOFT_TIME_LIMIT = _coerce_int(os.environ.get("SYNC_TASK_SOFT_TIME_LIMIT"), 55 * 60, minimum=60)

    # Validation thresholds
    SYNC_STALE_OPEN_DAYS = _coerce_int(os.environ.get("SYNC_STALE_OPEN_DAYS"), 7, minimum=1)
    SYNC_SURVEY_TIMEOUT_HOURS = _coerce_int(os.environ.get("SYNC_SURVEY_TIMEOUT_HOURS"), 24, minimum=1)
    SYNC_MESSAGE_GAP_HOURS = _coerce_int(os.environ.get("SYNC_MESSAGE_GAP_HOURS"), 24, minimum=1)

    # B2Chat API; credentials are read from the environment by the adapter
    B2CHAT_API_URL = os.environ.get("B2CHAT_API_URL", "https://api.b2chat.io")

    # Celery worker
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")


class DevelopmentConfig(Config):
    DEBUG = True
    # Use the instance folder for the database, relative to the project root
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (Windows needs forward slashes)
    db_path_normalized = os.path.join(instance_path, "chatsync_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    # conftest points this at a temp file so eager Celery tasks share the database
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    SYNC_AUTO_SYNC = False
    SYNC_RETRY_DELAY = 0.1


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
