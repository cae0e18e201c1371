import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()  # Load environment variables from .env file

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent.parent

LOG_DIR = os.path.join('logs')
os.makedirs(LOG_DIR, exist_ok=True)

# Application definition
INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',

    # Third party apps
    'rest_framework',

    # Local apps
    'rentals',
]

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'Asia/Bangkok'
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# REST Framework settings
REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": (
        "rest_framework.renderers.JSONRenderer",
    ),
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
    ],
    'COERCE_DECIMAL_TO_STRING': False,
}

# Marketplace REST API (source of truth for rentals, availability, fees)
MARKETPLACE_API_URL = os.environ.get(
    'MARKETPLACE_API_URL', 'http://localhost:3001/api'
)
MARKETPLACE_API_TOKEN = os.environ.get('MARKETPLACE_API_TOKEN', '')
MARKETPLACE_TIMEOUT = int(os.environ.get('MARKETPLACE_TIMEOUT', 30))
# Only idempotent GETs are retried; mutations are sent exactly once.
MARKETPLACE_GET_MAX_RETRIES = int(
    os.environ.get('MARKETPLACE_GET_MAX_RETRIES', 2)
)

# Slip OCR verification
SLIP_VERIFICATION_API_URL = os.environ.get(
    'SLIP_VERIFICATION_API_URL', 'https://developer.easyslip.com/api/v1/verify'
)
SLIP_VERIFICATION_API_TOKEN = os.environ.get('SLIP_VERIFICATION_API_TOKEN', '')
SLIP_VERIFICATION_TIMEOUT = int(os.environ.get('SLIP_VERIFICATION_TIMEOUT', 30))

# Payment reconciliation tolerances (tuned against real bank-slip noise)
SLIP_AMOUNT_TOLERANCE = Decimal(os.environ.get('SLIP_AMOUNT_TOLERANCE', '5'))
SLIP_DATE_GRACE_DAYS = int(os.environ.get('SLIP_DATE_GRACE_DAYS', 2))

# Rental detail polling while waiting on the other party
RENTAL_POLL_INTERVAL_SECONDS = float(
    os.environ.get('RENTAL_POLL_INTERVAL_SECONDS', 5)
)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
        "file": {
            "class": "logging.FileHandler",
            "filename": os.path.join(LOG_DIR, "rentease.log"),
            "formatter": "verbose",
        },
    },
    "loggers": {
        "rentals": {
            "handlers": ["console", "file"],
            "level": "INFO",
            "propagate": False,
        },
        "rentease": {
            "handlers": ["console", "file"],
            "level": "INFO",
            "propagate": False,
        },
    },
}
