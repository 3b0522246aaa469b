import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()  # Load .env file if present

BASE_DIR = Path(__file__).resolve().parents[2]
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-key")
DEBUG = os.getenv("DJANGO_DEBUG", "false").lower() in {"1", "true", "yes"}
raw_hosts = os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1")
ALLOWED_HOSTS = [h.strip() for h in raw_hosts.split(",") if h.strip()]

INSTALLED_APPS = [
    # Django Admin Deps
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Our apps
    "poolledger.apps.users.apps.UsersConfig",
    "poolledger.apps.pools.apps.PoolsConfig",
    "poolledger.apps.fees.apps.FeesConfig",
    "poolledger.apps.redemptions.apps.RedemptionsConfig",
    "poolledger.apps.swaps.apps.SwapsConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "poolledger.urls"
TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ]
        },
    }
]
WSGI_APPLICATION = "poolledger.wsgi.application"

# Postgres by default; the queue-position and watermark paths rely on
# SELECT ... FOR UPDATE, which SQLite silently ignores.
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "HOST": os.getenv("DB_HOST", "localhost"),
        "PORT": os.getenv("DB_PORT", "5432"),
        "NAME": os.getenv("DB_NAME", "poolledger"),
        "USER": os.getenv("DB_USER", "poolledger"),
        "PASSWORD": os.getenv("DB_PASSWORD", "poolledger"),
    }
}

DATABASE_URL = os.getenv("DATABASE_URL")
if DATABASE_URL:
    from urllib.parse import urlparse

    parsed = urlparse(DATABASE_URL)
    DATABASES["default"].update(
        {
            "NAME": parsed.path.lstrip("/"),
            "USER": parsed.username,
            "PASSWORD": parsed.password,
            "HOST": parsed.hostname,
            "PORT": parsed.port or "5432",
            "OPTIONS": {"sslmode": os.getenv("DB_SSLMODE", "require")},
        }
    )

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {"format": "%(asctime)s %(levelname)s [%(name)s] %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "default"},
    },
    "loggers": {
        "poolledger": {
            "handlers": ["console"],
            "level": os.getenv("POOLLEDGER_LOG_LEVEL", "INFO"),
        },
    },
}

# Celery configuration
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_DEFAULT_QUEUE = os.getenv("CELERY_TASK_DEFAULT_QUEUE", "ledger")
CELERY_TASK_ACKS_LATE = True
CELERY_TASK_TIME_LIMIT = int(os.getenv("CELERY_TASK_TIME_LIMIT", "600"))

CELERY_BROKER_CONNECTION_RETRY_ON_STARTUP = True

FEE_ACCRUAL_INTERVAL_SECONDS = int(os.getenv("FEE_ACCRUAL_INTERVAL_SECONDS", str(24 * 60 * 60)))
SETTLEMENT_INTERVAL_SECONDS = int(os.getenv("SETTLEMENT_INTERVAL_SECONDS", str(60 * 60)))
SWAP_CLEANUP_INTERVAL_SECONDS = int(os.getenv("SWAP_CLEANUP_INTERVAL_SECONDS", str(10 * 60)))

CELERY_BEAT_SCHEDULE = {
    "accrue-management-fees": {
        "task": "poolledger.apps.fees.tasks.accrue_management_fees_task",
        "schedule": FEE_ACCRUAL_INTERVAL_SECONDS,
    },
    "settle-eligible-redemptions": {
        "task": "poolledger.apps.redemptions.tasks.settle_eligible_redemptions_task",
        "schedule": SETTLEMENT_INTERVAL_SECONDS,
    },
    "cleanup-stale-swaps": {
        "task": "poolledger.apps.swaps.tasks.cleanup_stale_swaps_task",
        "schedule": SWAP_CLEANUP_INTERVAL_SECONDS,
    },
}

# ==============================================================================
# Ledger engines
# ==============================================================================

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Treasury that receives accrued fees; required before any FeeConfig is created
FEE_TREASURY_ADDRESS = os.getenv("FEE_TREASURY_ADDRESS", "")

# Investor ids allowed to change fee configs and approve/reject redemptions
raw_admins = os.getenv("ADMIN_USER_IDS", "")
ADMIN_USER_IDS = [a.strip() for a in raw_admins.split(",") if a.strip()]

SWAP_FEE_BPS = int(os.getenv("SWAP_FEE_BPS", "25"))  # 0.25%

FEE_ACCRUAL_ENABLED = os.getenv("FEE_ACCRUAL_ENABLED", "true").lower() in {"1", "true", "yes"}
SETTLEMENT_ENABLED = os.getenv("SETTLEMENT_ENABLED", "true").lower() in {"1", "true", "yes"}
SETTLEMENT_MAX_BATCH = int(os.getenv("SETTLEMENT_MAX_BATCH", "10"))
# Must exceed the worst-case duration of one sweep (executor waits up to 120s per tx)
SETTLEMENT_LOCK_TIMEOUT = int(os.getenv("SETTLEMENT_LOCK_TIMEOUT", "1800"))

# ==============================================================================
# Web3 / Blockchain Configuration
# ==============================================================================

# For local Hardhat: http://127.0.0.1:8545
WEB3_PROVIDER_URL = os.getenv("WEB3_PROVIDER_URL", "http://127.0.0.1:8545")

# Relayer wallet that submits settlement redemptions
RELAYER_ADDRESS = os.getenv("RELAYER_ADDRESS", "")
RELAYER_PRIVATE_KEY = os.getenv("RELAYER_PRIVATE_KEY", "")

# Contract Addresses
POOL_CONTRACT_ADDRESS = os.getenv("POOL_CONTRACT_ADDRESS", "")
USDC_ADDRESS = os.getenv("USDC_ADDRESS", "")

# ABI Paths
ABI_DIR = BASE_DIR / "poolledger" / "onchain" / "abi"
POOL_ABI_PATH = ABI_DIR / "AssetPool.json"
ERC20_ABI_PATH = ABI_DIR / "ERC20.json"
SMART_WALLET_ABI_PATH = ABI_DIR / "SmartWallet.json"
