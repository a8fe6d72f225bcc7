"""
Database layer — signup and OTP persistence.

Backends:
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import InMemorySignupStore
  store = InMemorySignupStore()
  record = await store.find_by_email("ops@acme.io")
"""
from database.store_base import BaseSignupStore, SignupConflictError
from database.store_memory import InMemorySignupStore

__all__ = [
    "BaseSignupStore", "SignupConflictError",
    "InMemorySignupStore",
]
