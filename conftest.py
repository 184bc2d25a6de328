import os
import tempfile

from dotenv import load_dotenv

# Optional local overrides (log level, etc.); the values below always win
env_test_path = os.path.join(os.path.dirname(__file__), ".env.test")
if os.path.exists(env_test_path):
    load_dotenv(env_test_path)

# Settings are read at import time (engine, limiter), so the test
# environment has to be in place before any project module is imported.
_TEST_DB = os.path.join(tempfile.gettempdir(), "marketplace-test-default.db")

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB}"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_marketplace_secret"
os.environ["PAYSTACK_BASE_URL"] = "https://api.paystack.test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["APP_URL"] = "http://marketplace.test"

from libs.common.config import get_settings  # noqa: E402

# Clear cached settings to reload with the test env vars
get_settings.cache_clear()
settings = get_settings()
