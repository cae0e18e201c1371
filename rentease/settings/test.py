from .base import * # noqa

SECRET_KEY = 'test-secret-key'
DEBUG = False

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

MARKETPLACE_API_URL = 'https://api.rentease.test/api'
MARKETPLACE_API_TOKEN = 'test-token'
MARKETPLACE_GET_MAX_RETRIES = 2
SLIP_VERIFICATION_API_URL = 'https://slip.rentease.test/verify'
SLIP_VERIFICATION_API_TOKEN = 'slip-token'
RENTAL_POLL_INTERVAL_SECONDS = 0.01

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "handlers": {
        "null": {"class": "logging.NullHandler"},
    },
    "loggers": {
        "rentals": {"handlers": ["null"], "propagate": False},
        "rentease": {"handlers": ["null"], "propagate": False},
    },
}
