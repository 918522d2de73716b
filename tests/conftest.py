"""Shared test fixtures and configuration.

Sets environment variables before any jurybox modules are imported,
preventing import errors from missing API keys and keeping test data out
of the working directory.
"""

import os
import tempfile

# Set required env vars BEFORE any jurybox imports happen.
# pytest loads conftest.py before test modules, so this runs first.
os.environ.setdefault("OPENROUTER_API_KEY", "test-key-not-real")
os.environ.setdefault("JURYBOX_DATA_DIR", tempfile.mkdtemp(prefix="jurybox-test-"))
# Tracing stays off unless a test turns it on
os.environ.pop("OTEL_EXPORTER_OTLP_ENDPOINT", None)
