from environs import Env
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

env = Env()
env.read_env(BASE_DIR / '.env')

APP_ENV = env.str('APP_ENV', 'local')

SECRET_KEY = env.str('APP_SECRET_KEY', 'change-me')

DEBUG = APP_ENV != 'production'

ALLOWED_HOSTS = env.list('ALLOWED_HOSTS', default=['*'])

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'payflix.apps.PayflixConfig',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'core.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'core.wsgi.application'


DATABASES = {
    'default': {
        'ENGINE': env.str('DATABASE_ENGINE', 'django.db.backends.postgresql'),
        'NAME': env.str(
            'PGSQL_DATABASE_PAYFLIX',
            env.str('PGSQL_DATABASE', 'payflix'),
        ),
        'USER': env.str('PGSQL_USER', 'postgres'),
        'PASSWORD': env.str('PGSQL_PASSWORD', 'mysecretpassword'),
        'HOST': env.str('PGSQL_HOST', 'localhost'),
        'PORT': env.int('PGSQL_PORT', 5432),
    }
}

# Pending sessions and unlock leases live in the cache. A shared backend is
# required once more than one replica serves the prepare/confirm handshake.
REDIS_URL = env.str('REDIS_URL', '')

if REDIS_URL:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.redis.RedisCache',
            'LOCATION': REDIS_URL,
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'payflix',
        }
    }


AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
]


LANGUAGE_CODE = 'en-us'

TIME_ZONE = 'UTC'

USE_I18N = True

USE_TZ = True


STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'static'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
}

# AES-256-GCM key for delegate keys at rest, 64 hex characters.
SESSION_ENCRYPTION_KEY = env.str('SESSION_ENCRYPTION_KEY', '')

PAYFLIX_SOLANA_RPC_URL = env.str(
    'PAYFLIX_SOLANA_RPC_URL', 'https://api.devnet.solana.com')
PAYFLIX_SOLANA_NETWORK = env.str('PAYFLIX_SOLANA_NETWORK', 'solana-devnet')
PAYFLIX_USDC_MINT = env.str(
    'PAYFLIX_USDC_MINT', '4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU')
PAYFLIX_FACILITATOR_PRIVATE_KEY = env.str(
    'PAYFLIX_FACILITATOR_PRIVATE_KEY', '')
PAYFLIX_PLATFORM_FEE_WALLET = env.str(
    'PAYFLIX_PLATFORM_FEE_WALLET', '81qpJ8kP4kb1Vf7kgubyEUcJ726dHEEqpFRP4wTFsr1o')
PAYFLIX_PLATFORM_FEE_PERCENT = env.decimal(
    'PAYFLIX_PLATFORM_FEE_PERCENT', '2.85')

PAYFLIX_SESSION_TTL_HOURS = env.int('PAYFLIX_SESSION_TTL_HOURS', 24)
PAYFLIX_PENDING_SESSION_TTL_SECONDS = env.int(
    'PAYFLIX_PENDING_SESSION_TTL_SECONDS', 600)
PAYFLIX_PENDING_SESSION_CACHE = env.str(
    'PAYFLIX_PENDING_SESSION_CACHE', 'default')

PAYFLIX_CONFIRM_TIMEOUT_SECONDS = env.int('PAYFLIX_CONFIRM_TIMEOUT_SECONDS', 60)
PAYFLIX_CONFIRM_POLL_SECONDS = env.float('PAYFLIX_CONFIRM_POLL_SECONDS', 1.0)
PAYFLIX_RPC_MAX_RETRIES = env.int('PAYFLIX_RPC_MAX_RETRIES', 3)

PAYFLIX_UNLOCK_LEASE_SECONDS = env.int('PAYFLIX_UNLOCK_LEASE_SECONDS', 120)
PAYFLIX_LEDGER_DRIFT_TOLERANCE = env.decimal(
    'PAYFLIX_LEDGER_DRIFT_TOLERANCE', '0.01')
PAYFLIX_SWEEP_INTERVAL_SECONDS = env.int('PAYFLIX_SWEEP_INTERVAL_SECONDS', 300)
