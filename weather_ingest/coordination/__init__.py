"""Coordination layer - lease del poller activo."""

from .lease import InMemoryLeaseStore, LeaseInfo, LeaseStore, PollerLease, RedisLeaseStore

__all__ = ["InMemoryLeaseStore", "LeaseInfo", "LeaseStore", "PollerLease", "RedisLeaseStore"]
