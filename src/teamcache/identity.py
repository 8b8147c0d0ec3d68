"""Per-process identity used as the lock holder and audit actor."""

import getpass
import os
import socket
import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class Identity:
    """Stable holder id for this process plus a human-readable name.

    Attributes:
        holder_id: Unique per process; written into leases
        display_name: Shown in state and audit records
    """

    holder_id: str
    display_name: str

    @classmethod
    def for_process(cls, display_name: str | None = None) -> "Identity":
        """Build an identity for the running process.

        The holder id combines host, pid and a random suffix so two processes
        on one host (or a restarted process) never share a lease.
        """
        host = socket.gethostname().split(".")[0] or "host"
        holder_id = f"{host}-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        return cls(holder_id=holder_id, display_name=display_name or _default_display_name())


def _default_display_name() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.getenv("USER") or os.getenv("USERNAME") or "unknown"


__all__ = ["Identity"]
