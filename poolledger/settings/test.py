from .base import *

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"
CELERY_TASK_ALWAYS_EAGER = True

FEE_TREASURY_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
ADMIN_USER_IDS = ["1"]
SWAP_FEE_BPS = 25

POOL_CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
USDC_ADDRESS = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
RELAYER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
RELAYER_PRIVATE_KEY = "0x" + "11" * 32
