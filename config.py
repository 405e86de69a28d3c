import os
from datetime import date
from decimal import Decimal


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-me-in-production')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///circulation.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Fine charged per whole day a book is late
    FINE_DAILY_RATE = Decimal(os.environ.get('FINE_DAILY_RATE', '5.00'))
    DEFAULT_LOAN_DAYS = int(os.environ.get('DEFAULT_LOAN_DAYS', 14))
    MAX_EXTENSION_DAYS = int(os.environ.get('MAX_EXTENSION_DAYS', 365))

    # Zero-argument callable returning today's date
    CLOCK = staticmethod(date.today)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    LOG_LEVEL = 'DEBUG'
