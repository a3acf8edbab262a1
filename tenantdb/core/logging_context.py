import logging
import contextvars
from contextlib import contextmanager

# Extra fields merged into every record emitted while a context is active
log_context = contextvars.ContextVar("tenantdb_log_context", default={})


class ContextFilter(logging.Filter):
    def filter(self, record):
        context = log_context.get()
        for key, value in context.items():
            setattr(record, key, value)
        return True


@contextmanager
def LoggingContext(**kwargs):
    """
    Context manager to add extra fields to log records.
    example:
        with LoggingContext(run_id="mig-1700000000"):
            logger.info("This record carries run_id")
    """
    current = log_context.get().copy()
    current.update(kwargs)
    token = log_context.set(current)
    try:
        yield
    finally:
        log_context.reset(token)
