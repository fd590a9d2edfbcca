"""Access policy, audit trail and database-native policy mirroring."""

from .access import Principal, Operation, GuardedSession, authorize, resolve_principal

__all__ = ["Principal", "Operation", "GuardedSession", "authorize", "resolve_principal"]
