import os
import sys

# Tests import `backend.*`, so the repo root must be importable whether pytest
# runs from the repo root or from within `backend/`.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

# Settings are read at import time; keep the app in a known mode regardless of
# the developer's shell.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "postgresql://localhost/pos_payments_test")
