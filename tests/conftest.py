import os

# Must be set before app.database is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)
os.environ.pop("AFFILIATE_COMMISSION_RATE", None)
os.environ.pop("STRIPE_MINIMUM_AMOUNTS", None)
