"""Fixtures and fakes for tests in tests/*."""
from __future__ import annotations
