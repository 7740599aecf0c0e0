from .base import *  # noqa: F401,F403

SECRET_KEY = "test-secret-key"
DEBUG = False

# File-backed so worker threads in transactional tests share one database.
# IMMEDIATE makes every atomic block take SQLite's write lock up front, which
# serializes competing writers the way select_for_update does on PostgreSQL.
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
        "ATOMIC_REQUESTS": True,
        "OPTIONS": {"transaction_mode": "IMMEDIATE", "timeout": 20},
        "TEST": {"NAME": str(BASE_DIR / "test_freight.sqlite3")},  # noqa: F405
    }
}

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

PAYMENT_RAIL_BACKEND = "marketplace.services.payment_rail.LocalPaymentRail"
PAYMENT_RAIL_RETRY_BACKOFF = 0
STRIPE_SECRET_KEY = "sk_test_dummy"
STRIPE_WEBHOOK_SECRET = "whsec_dummy"
