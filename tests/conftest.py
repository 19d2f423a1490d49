"""Global test configuration — runs before any test module imports."""
import os

# Must be set BEFORE any zkpersona imports — slowapi reads this at init
os.environ["RATELIMIT_ENABLED"] = "False"
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key-global")

TEST_ADMIN_KEY = os.environ["ADMIN_API_KEY"]
ADMIN_HEADERS = {"X-Admin-Key": TEST_ADMIN_KEY}

WALLET = "aleo1qnr4dkkvkgfqph0vzc3y6z2eu975wnpz2925ntjccd5cfqxtyu8s7pyjh9"
NOW = 1_750_000_000.0


def pytest_configure(config):
    """Disable rate limiter after all imports."""
    try:
        from zkpersona.security import limiter
        limiter.enabled = False
    except ImportError:
        pass
