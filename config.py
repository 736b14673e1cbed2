"""Configuration module for Flask application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '0') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')
    TESTING = False
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        # Try DB_* variables (Docker style)
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'dropshop')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'dropshop')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'dropshop')

        DATABASE_URL = (
            f"postgresql://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', 'false').lower() == 'true'
    SQLALCHEMY_POOL_SIZE = int(os.getenv('SQLALCHEMY_POOL_SIZE', '10'))
    SQLALCHEMY_MAX_OVERFLOW = int(os.getenv('SQLALCHEMY_MAX_OVERFLOW', '20'))

    # Shop information (emails)
    SHOP_NAME = os.getenv('SHOP_NAME', 'Your Sandwich Shop')
    SHOP_PHONE = os.getenv('SHOP_PHONE', '')
    SHOP_EMAIL = os.getenv('SHOP_EMAIL', 'orders@localhost')
    ADMIN_NOTIFICATION_EMAIL = os.getenv('ADMIN_NOTIFICATION_EMAIL', '')

    # Drops / ordering window
    DROP_GRACE_PERIOD_MINUTES = int(os.getenv('DROP_GRACE_PERIOD_MINUTES', '15'))
    STALE_ORDER_MINUTES = int(os.getenv('STALE_ORDER_MINUTES', '30'))
    # Public URL of this API, polled by flask wait-for-order
    ORDER_API_BASE_URL = os.getenv('ORDER_API_BASE_URL', 'http://localhost:5000')
    # Timezone of pickup hours configured on locations
    SHOP_TIMEZONE = os.getenv('SHOP_TIMEZONE', 'UTC')
    DEFAULT_PICKUP_HOUR_END = os.getenv('DEFAULT_PICKUP_HOUR_END', '14:00')

    # Stripe
    STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY', '')
    STRIPE_WEBHOOK_SECRET = os.getenv('STRIPE_WEBHOOK_SECRET', '')
    STRIPE_CURRENCY = os.getenv('STRIPE_CURRENCY', 'eur')

    # Email configuration
    MAIL_SERVER = os.getenv('SMTP_HOST', 'smtp.gmail.com')
    MAIL_PORT = int(os.getenv('SMTP_PORT', 587))
    MAIL_USE_TLS = True
    MAIL_USE_SSL = False
    MAIL_USERNAME = os.getenv('SMTP_USER') or ''
    MAIL_PASSWORD = os.getenv('SMTP_PASSWORD') or ''
    MAIL_DEFAULT_SENDER = (
        os.getenv('SMTP_FROM')
        or MAIL_USERNAME
        or 'no-reply@localhost'
    )
    MAIL_SUPPRESS_SEND = os.getenv('MAIL_SUPPRESS_SEND', 'false').lower() == 'true'


class TestingConfig(Config):
    """Configuration used by the pytest suite (SQLite, no outbound mail)."""

    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = os.getenv('TEST_DATABASE_URL', 'sqlite:///dropshop-test.db')
    SQLALCHEMY_ECHO = False
    MAIL_SUPPRESS_SEND = True
    ADMIN_NOTIFICATION_EMAIL = 'admin@example.com'
    ORDER_API_BASE_URL = 'http://localhost:5000'
    STRIPE_SECRET_KEY = 'sk_test_dummy'
    STRIPE_WEBHOOK_SECRET = 'whsec_test_secret'
