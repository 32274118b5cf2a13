"""Context variables shared by the API and the worker for log correlation.

``request_id`` is set per HTTP request by the middleware, ``job_id`` per
worker invocation by the JobProcessor. Both are read by the logging filter.
"""

import contextvars

request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default=""
)
job_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "job_id", default=""
)


def get_request_id() -> str:
    """Get the current request ID (empty string if not in a request context)."""
    return request_id_var.get()


def get_job_id() -> str:
    """Get the ID of the job being processed (empty string outside a worker)."""
    return job_id_var.get()
