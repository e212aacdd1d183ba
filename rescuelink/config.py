import os
from datetime import timedelta

BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///rescuelink.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", SECRET_KEY)
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(days=int(os.getenv("JWT_EXPIRE_DAYS", "7")))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    SERVER_PORT = int(os.getenv("SERVER_PORT", "5000"))

    # Pricing: up to AMBULANCE_FREE_KM is free, each extra km costs AMBULANCE_PER_KM_FEE BDT
    AMBULANCE_FREE_KM = float(os.getenv("AMBULANCE_FREE_KM", "5"))
    AMBULANCE_PER_KM_FEE = int(os.getenv("AMBULANCE_PER_KM_FEE", "100"))
    VOLUNTEER_FEE_PERCENT = float(os.getenv("VOLUNTEER_FEE_PERCENT", "0.05"))
    DEFAULT_PRESCRIPTION_FEE = int(os.getenv("DEFAULT_PRESCRIPTION_FEE", "50"))

    HELPER_SEARCH_RADIUS_KM = float(os.getenv("HELPER_SEARCH_RADIUS_KM", "50"))
    PRESCRIPTION_DIR = os.getenv("PRESCRIPTION_DIR", os.path.join(BASE_DIR, "instance", "prescriptions"))

    # Optional endpoint notified when a payment should be sent on to the helper
    PAYOUT_WEBHOOK_URL = os.getenv("PAYOUT_WEBHOOK_URL")
    PAYOUT_WEBHOOK_TIMEOUT = 3


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    JWT_SECRET_KEY = "rescuelink-test-secret-key-0123456789"
    PAYOUT_WEBHOOK_URL = None
