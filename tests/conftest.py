"""Root conftest — shared test configuration."""

import os

# Ensure tests never point at a real editor server
os.environ.setdefault("REMOTE_BASE_URL", "http://remote.test")
os.environ.setdefault("LOG_FORMAT", "text")
