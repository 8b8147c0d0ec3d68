"""teamcache - shared team cost cache coordination

Philosophy:
- The object store is the only shared state between clients
- Leases, not a lock service: a crashed client blocks its team for at most
  one lease TTL
- Soft-fail everywhere: a failed refresh is recorded and retried on the next
  tick, it never corrupts the shared entry
- Time is injected (Clock), so every schedule can be tested without sleeping

Clients of one team share a single cost snapshot in a blob container, refresh
it at most once per jittered interval, and keep an audit trail of manual
refreshes.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
