"""Persistence: the abstract ``Store`` contract and its SQLite implementation."""

from mailtriage.store.base import MEMORY_CONTEXT_SLOTS, Store
from mailtriage.store.sqlite import SQLiteStore

__all__ = ["MEMORY_CONTEXT_SLOTS", "Store", "SQLiteStore"]
