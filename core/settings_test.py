from core.settings import *  # noqa: F401,F403

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'payflix-tests',
    }
}

SESSION_ENCRYPTION_KEY = '6f' * 32

PAYFLIX_SOLANA_RPC_URL = 'http://localhost:8899'
PAYFLIX_USDC_MINT = '4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU'
PAYFLIX_FACILITATOR_PRIVATE_KEY = ''
PAYFLIX_PLATFORM_FEE_WALLET = '81qpJ8kP4kb1Vf7kgubyEUcJ726dHEEqpFRP4wTFsr1o'
PAYFLIX_CONFIRM_TIMEOUT_SECONDS = 1
PAYFLIX_CONFIRM_POLL_SECONDS = 0
