"""Configuration module for the Restobill Flask application."""
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
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        # Try DB_* variables (Docker style)
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'restobill')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'restobill')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'restobill')

        DATABASE_URL = (
            f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', 'false').lower() == 'true'
    SQLITE_BUSY_TIMEOUT = float(os.getenv('SQLITE_BUSY_TIMEOUT', '30'))

    # Billing defaults, used when a restaurant has no billing_config row
    DEFAULT_TAX_ENABLED = os.getenv('DEFAULT_TAX_ENABLED', 'true').lower() == 'true'
    DEFAULT_TAX_RATE = os.getenv('DEFAULT_TAX_RATE', '8.5')  # percent
    DEFAULT_CURRENCY = os.getenv('DEFAULT_CURRENCY', 'USD')
    BILL_NUMBER_PREFIX = os.getenv('BILL_NUMBER_PREFIX', 'INV')

    # Order lifecycle
    TRANSITION_TIMEOUT_SECONDS = float(os.getenv('TRANSITION_TIMEOUT_SECONDS', '10'))
