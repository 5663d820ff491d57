import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# Load .env from the api directory or the project root
env_path = Path(__file__).parent / '.env'
if not env_path.exists():
    env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)


class Config:
    TESTING = False

    # Comma separated list, a lone "*" allows any frontend
    _origins = [o.strip() for o in os.environ.get('CORS_ORIGINS', '*').split(',') if o.strip()]
    CORS_ORIGINS = '*' if _origins in ([], ['*']) else _origins

    DEFAULT_CURRENCY = os.environ.get('DEFAULT_CURRENCY', 'USD')
    # credit | self | reject, see settlement.aggregate
    EMPTY_SHARES_POLICY = os.environ.get('EMPTY_SHARES_POLICY', 'self')
    SHARE_TOLERANCE = Decimal(os.environ.get('SHARE_TOLERANCE', '0.01'))

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


class TestConfig(Config):
    TESTING = True
    CORS_ORIGINS = '*'
    DEFAULT_CURRENCY = 'USD'
    EMPTY_SHARES_POLICY = 'self'
    SHARE_TOLERANCE = Decimal('0.01')
    LOG_LEVEL = 'DEBUG'
