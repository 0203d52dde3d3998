"""Global pytest configuration."""

import os

# Set test defaults before any imports read settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("METADATA_BACKEND", "memory")
os.environ.setdefault("STORAGE_BACKEND", "memory")
