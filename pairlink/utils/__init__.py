"""Utility functions and classes shared across pairlink."""
from __future__ import annotations
