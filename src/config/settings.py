"""
Configuration settings for the subscription pipeline.
"""

import os
from pathlib import Path

from dotenv import load_dotenv


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


class Config:
    """Configuration settings, read from the environment on access."""

    @classmethod
    def database_url(cls) -> str:
        return os.getenv('DATABASE_URL', 'sqlite:///subscriptions.db')

    # Scan settings
    @classmethod
    def scan_max_messages(cls) -> int:
        return _int_env('SCAN_MAX_MESSAGES', 300)

    @classmethod
    def scan_page_size(cls) -> int:
        return _int_env('SCAN_PAGE_SIZE', 100)

    @classmethod
    def scan_query(cls) -> str:
        # in:anywhere includes spam and trash, where subscriptions often hide
        return os.getenv('SCAN_QUERY', 'in:anywhere newer_than:30d')

    # Unsubscribe request settings
    @classmethod
    def request_timeout(cls) -> float:
        return _float_env('REQUEST_TIMEOUT', 30.0)

    @classmethod
    def user_agent(cls) -> str:
        return os.getenv('USER_AGENT', 'SubscriptionPipeline/1.0')

    # Queue settings
    @classmethod
    def unsubscribe_max_attempts(cls) -> int:
        return _int_env('UNSUBSCRIBE_MAX_ATTEMPTS', 3)

    @classmethod
    def unsubscribe_backoff_seconds(cls) -> int:
        return _int_env('UNSUBSCRIBE_BACKOFF_SECONDS', 2)

    @classmethod
    def scan_concurrency(cls) -> int:
        return _int_env('SCAN_CONCURRENCY', 2)

    @classmethod
    def unsubscribe_concurrency(cls) -> int:
        return _int_env('UNSUBSCRIBE_CONCURRENCY', 5)

    @classmethod
    def scan_job_timeout(cls) -> int:
        return _int_env('SCAN_JOB_TIMEOUT', 300)

    @classmethod
    def unsubscribe_job_timeout(cls) -> int:
        return _int_env('UNSUBSCRIBE_JOB_TIMEOUT', 60)

    @classmethod
    def completed_job_retention(cls) -> int:
        return _int_env('COMPLETED_JOB_RETENTION', 60 * 60)

    @classmethod
    def failed_job_retention(cls) -> int:
        return _int_env('FAILED_JOB_RETENTION', 24 * 60 * 60)

    @classmethod
    def worker_poll_interval(cls) -> float:
        return _float_env('WORKER_POLL_INTERVAL', 1.0)

    # Google OAuth client
    @classmethod
    def google_client_id(cls) -> str:
        return os.getenv('GOOGLE_CLIENT_ID', '')

    @classmethod
    def google_client_secret(cls) -> str:
        return os.getenv('GOOGLE_CLIENT_SECRET', '')

    # Logging
    @classmethod
    def log_level(cls) -> str:
        return os.getenv('LOG_LEVEL', 'INFO')

    @classmethod
    def log_format(cls) -> str:
        return os.getenv('LOG_FORMAT', 'json')

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory for storing database and credentials."""
        data_dir = Path(os.getenv('DATA_DIR', Path.cwd() / 'data'))
        data_dir.mkdir(parents=True, exist_ok=True)
        return data_dir

    @classmethod
    def get_database_path(cls) -> str:
        """Database URL with relative SQLite paths placed in the data directory."""
        url = cls.database_url()
        if url.startswith('sqlite:///'):
            db_file = url[len('sqlite:///'):]
            if db_file != ':memory:' and not os.path.isabs(db_file):
                return f"sqlite:///{cls.get_data_dir() / db_file}"
        return url

    @classmethod
    def get_credential_store_path(cls) -> Path:
        """Get the path to the OAuth token store file."""
        store_path = os.getenv('CREDENTIAL_STORE_PATH', 'oauth_tokens.json')

        # Expand {$DATA_DIR} variable if present
        if '{$DATA_DIR}' in store_path:
            store_path = store_path.replace('{$DATA_DIR}', str(cls.get_data_dir()))

        path = Path(store_path)
        if not path.is_absolute():
            path = cls.get_data_dir() / path
        return path


def load_config_from_env_file(env_file: str = '.env'):
    """Load configuration from environment file."""
    env_path = Path(env_file)
    if env_path.exists():
        load_dotenv(env_path)
