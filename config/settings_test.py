import os
import tempfile

from config.settings import *  # noqa: F401,F403

# Postgres when DATABASE_URL points at one, so row locking is exercised for real.
_use_postgres = bool(os.getenv("DATABASE_URL")) and DATABASES["default"]["ENGINE"] == "django.db.backends.postgresql"  # noqa: F405
if not _use_postgres:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": ":memory:",
            # file-backed so worker threads share one database
            "TEST": {"NAME": os.path.join(tempfile.gettempdir(), f"stockroom-test-{os.getpid()}.sqlite3")},
        }
    }

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

REST_FRAMEWORK = {
    **REST_FRAMEWORK,  # noqa: F405
    "DEFAULT_THROTTLE_CLASSES": [],
}

USER_ADMIN_CREDENTIAL = "test-user-admin-credential"
STOCK_LOCK_RETRY_BACKOFF_SECONDS = 0
REPORT_CACHE_TIMEOUT = 0
