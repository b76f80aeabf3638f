import os
import sys

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# must be set before assistance_service.database is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_assistance.db")
os.environ["TESTING"] = "1"
os.environ.pop("REDIS_URL", None)
