# config/base.py
import os

KNOWN_SOURCES = ("ghl", "manychat", "csv")


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


def _parse_source_list(value, *, default=KNOWN_SOURCES):
    """
    Parse a comma-separated source list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized source identifiers.
    """
    if not value:
        return tuple(default)

    seen = set()
    sources = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        sources.append(item)
    return tuple(sources)


def _coerce_int(value, default, *, minimum=None):
    try:
        number = int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        number = default
    if minimum is not None and number < minimum:
        number = minimum
    return number


def _coerce_float(value, default, *, minimum=None):
    try:
        number = float(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        number = default
    if minimum is not None and number < minimum:
        number = minimum
    return number


class Config:
    # SECRET_KEY must be set via environment variable in production
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

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

    # Unifier configuration
    UNIFIER_ENABLED = _coerce_bool(os.environ.get("UNIFIER_ENABLED"), default=True)
    UNIFIER_SOURCES = _parse_source_list(os.environ.get("UNIFIER_SOURCES", ""))

    _unknown_sources = [source for source in UNIFIER_SOURCES if source not in KNOWN_SOURCES]
    if _unknown_sources:
        raise ValueError(
            f"UNIFIER_SOURCES contains unknown sources: {', '.join(_unknown_sources)}. "
            f"Expected a subset of {', '.join(KNOWN_SOURCES)}."
        )

    UNIFIER_BATCH_SIZE = _coerce_int(os.environ.get("UNIFIER_BATCH_SIZE"), 50, minimum=1)
    UNIFIER_MICRO_BATCH_SIZE = _coerce_int(os.environ.get("UNIFIER_MICRO_BATCH_SIZE"), 25, minimum=1)
    UNIFIER_MICRO_BATCH_RETRY_DELAY = _coerce_float(
        os.environ.get("UNIFIER_MICRO_BATCH_RETRY_DELAY"), 0.5, minimum=0.0
    )
    UNIFIER_CHUNK_BUDGET_SECONDS = _coerce_float(os.environ.get("UNIFIER_CHUNK_BUDGET_SECONDS"), 50.0, minimum=1.0)
    UNIFIER_STALE_TIMEOUT_SECONDS = _coerce_int(os.environ.get("UNIFIER_STALE_TIMEOUT_SECONDS"), 300, minimum=30)
    UNIFIER_CONTINUATION_MAX_RETRIES = _coerce_int(
        os.environ.get("UNIFIER_CONTINUATION_MAX_RETRIES"), 3, minimum=0
    )
    UNIFIER_CONTINUATION_BACKOFF_SECONDS = _coerce_float(
        os.environ.get("UNIFIER_CONTINUATION_BACKOFF_SECONDS"), 1.0, minimum=0.0
    )
    UNIFIER_DEFAULT_COUNTRY_CODE = os.environ.get("UNIFIER_DEFAULT_COUNTRY_CODE", "52").lstrip("+") or "52"
    UNIFIER_PARALLEL_SOURCES = _coerce_bool(os.environ.get("UNIFIER_PARALLEL_SOURCES"), default=True)
    UNIFIER_ESTIMATED_RECORDS_PER_SECOND = _coerce_float(
        os.environ.get("UNIFIER_ESTIMATED_RECORDS_PER_SECOND"), 25.0, minimum=0.1
    )
    UNIFIER_MERGE_POLICY_PATH = os.environ.get("UNIFIER_MERGE_POLICY_PATH")

    # Worker configuration
    UNIFIER_WORKER_ENABLED = _coerce_bool(os.environ.get("UNIFIER_WORKER_ENABLED"), default=False)
    UNIFIER_TASK_TIME_LIMIT = _coerce_int(os.environ.get("UNIFIER_TASK_TIME_LIMIT"), 120, minimum=10)
    UNIFIER_TASK_SOFT_TIME_LIMIT = _coerce_int(os.environ.get("UNIFIER_TASK_SOFT_TIME_LIMIT"), 100, minimum=5)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    if UNIFIER_CHUNK_BUDGET_SECONDS >= UNIFIER_TASK_SOFT_TIME_LIMIT:
        raise ValueError(
            "UNIFIER_CHUNK_BUDGET_SECONDS must be lower than UNIFIER_TASK_SOFT_TIME_LIMIT "
            "so a chunk can checkpoint before the worker kills it."
        )


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes even on Windows
    db_path = os.path.join(instance_path, "unify_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

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
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    UNIFIER_PARALLEL_SOURCES = False
    UNIFIER_MICRO_BATCH_RETRY_DELAY = 0.0
    UNIFIER_CONTINUATION_BACKOFF_SECONDS = 0.0


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
