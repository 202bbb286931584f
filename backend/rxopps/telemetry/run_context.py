"""
Scan run context.

Holds the batch id of the scan currently executing in a ContextVar so log
lines emitted anywhere below the orchestrator can be tied back to the run.
"""

import time
import secrets
from contextlib import contextmanager
from contextvars import ContextVar

_batch_id_var: ContextVar[str] = ContextVar("batch_id", default="")


def get_batch_id() -> str:
    """Get the current scan batch id from context."""
    return _batch_id_var.get()


def new_batch_id(prefix: str = "scan") -> str:
    """Batch ids look like scan_1760000000000_a1b2c3d4."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@contextmanager
def bind_batch_id(batch_id: str):
    token = _batch_id_var.set(batch_id)
    try:
        yield batch_id
    finally:
        _batch_id_var.reset(token)
