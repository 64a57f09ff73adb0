"""
Django Settings for Tipjar Project

Configuration file for the Tipjar application, a platform for creators,
causes and campaigns to receive Bitcoin Lightning tips.

Key Features Configured:
- Google OAuth integration via django-allauth
- MySQL database support with PyMySQL (SQLite when MySQL is not configured)
- Lightning payment processor credentials and webhook secret
- Tip lifecycle timings (charge expiry, status polling)
- Console logging

Environment Variables:
- DJANGO_SECRET_KEY: Django secret key for cryptographic signing
- MYSQL_* variables: Database connection parameters
- LIGHTNING_GATEWAY_API_KEY: Payment processor API key
- LIGHTNING_WEBHOOK_SECRET: Shared secret for webhook signatures

For more information on Django settings:
https://docs.djangoproject.com/en/5.2/topics/settings/
"""

import os
from pathlib import Path
from dotenv import load_dotenv
import pymysql

# Configure PyMySQL to work as MySQLdb replacement
pymysql.install_as_MySQLdb()

# Build paths inside the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
load_dotenv()

# Security Settings
SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'django-insecure-tipjar-development-key')

# SECURITY WARNING: Don't run with debug turned on in production!
DEBUG = os.getenv("DJANGO_DEBUG", "False") == "True"

ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]

# Application Definition
INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    'tipjar',

    # Django Allauth applications for social authentication
    'django.contrib.sites',  # Required by django-allauth
    'allauth',
    'allauth.account',
    'allauth.socialaccount',
    'allauth.socialaccount.providers.google',
]

SITE_ID = int(os.environ.get('DJANGO_SITE_ID', '1'))

AUTHENTICATION_BACKENDS = [
    'django.contrib.auth.backends.ModelBackend',
    'allauth.account.auth_backends.AuthenticationBackend',
]

LOGIN_URL = '/accounts/login/'
LOGIN_REDIRECT_URL = '/dashboard/'
LOGOUT_REDIRECT_URL = '/'

# Django Allauth Configuration
# Page owners sign in with Google only
SOCIALACCOUNT_ADAPTER = 'tipjar.adapters.TipjarSocialAccountAdapter'
SOCIALACCOUNT_LOGIN_ON_GET = True
ACCOUNT_EMAIL_VERIFICATION = 'none'

SOCIALACCOUNT_PROVIDERS = {
    'google': {
        'SCOPE': [
            'email',
        ],
        'AUTH_PARAMS': {
            'access_type': 'online',
        }
    }
}


MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    'allauth.account.middleware.AccountMiddleware',
]

ROOT_URLCONF = 'core.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'core.wsgi.application'


# Database
# https://docs.djangoproject.com/en/5.2/ref/settings/#databases
# Connection timeouts bound every store call made by the payment flow.

if os.environ.get('MYSQL_DATABASE'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.mysql',
            'NAME': os.environ.get('MYSQL_DATABASE'),
            'USER': os.environ.get('MYSQL_USER', 'tipjar'),
            'PASSWORD': os.environ.get('MYSQL_PASSWORD', ''),
            'HOST': os.environ.get('MYSQL_HOST', 'localhost'),
            'PORT': os.environ.get('MYSQL_PORT', '3306'),
            'OPTIONS': {
                'connect_timeout': int(os.environ.get('MYSQL_CONNECT_TIMEOUT', '10')),
                'read_timeout': int(os.environ.get('MYSQL_READ_TIMEOUT', '10')),
                'write_timeout': int(os.environ.get('MYSQL_WRITE_TIMEOUT', '10')),
            },
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
            'OPTIONS': {
                'timeout': 10,
            },
        }
    }

AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]


# Internationalization
# https://docs.djangoproject.com/en/5.2/topics/i18n/

LANGUAGE_CODE = 'en-us'

TIME_ZONE = 'UTC'

USE_I18N = True

USE_TZ = True


# Static files (CSS, JavaScript, Images)
# https://docs.djangoproject.com/en/5.2/howto/static-files/

STATIC_URL = 'static/'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'


# Lightning payment processor
LIGHTNING_GATEWAY_API_KEY = os.environ.get('LIGHTNING_GATEWAY_API_KEY', '')
LIGHTNING_GATEWAY_BASE_URL = os.environ.get('LIGHTNING_GATEWAY_BASE_URL', 'https://api.zebedee.io/v0')
LIGHTNING_GATEWAY_TIMEOUT = float(os.environ.get('LIGHTNING_GATEWAY_TIMEOUT', '10'))
LIGHTNING_CALLBACK_URL = os.environ.get('LIGHTNING_CALLBACK_URL', '')
LIGHTNING_WEBHOOK_SECRET = os.environ.get('LIGHTNING_WEBHOOK_SECRET', '')
LIGHTNING_WEBHOOK_SIGNATURE_HEADER = os.environ.get('LIGHTNING_WEBHOOK_SIGNATURE_HEADER', 'X-Webhook-Signature')

# Tip lifecycle
TIP_CHARGE_EXPIRY_SECONDS = int(os.environ.get('TIP_CHARGE_EXPIRY_SECONDS', '300'))
TIP_POLL_INTERVAL_SECONDS = int(os.environ.get('TIP_POLL_INTERVAL_SECONDS', '3'))
TIP_POLL_TIMEOUT_SECONDS = int(os.environ.get('TIP_POLL_TIMEOUT_SECONDS', '300'))
RECENT_TIPS_LIMIT = int(os.environ.get('RECENT_TIPS_LIMIT', '10'))


# Logging
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {
            'format': '{asctime} {levelname} {name}: {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'simple',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'tipjar': {
            'handlers': ['console'],
            'level': os.environ.get('DJANGO_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
