"""
Portable State

Key Components:
- portable.py: Pydantic schemas for profile, preferences and the activity ledger, with
  defaults and validation helpers
- service.py: ``PortableStateSync`` pull, merge-on-push and activity ledger append
"""
