"""Request id middleware — correlates log lines with a single request.

Runs before every request. Sets g.request_id ("req_<hex>"), echoes it in
the X-Request-ID response header, and makes it available to log records
as %(request_id)s through RequestIdFilter.
"""

import logging
import uuid

from flask import g, has_request_context, request

REQUEST_ID_HEADER = "X-Request-ID"


def new_request_id():
    return f"req_{uuid.uuid4().hex[:16]}"


def assign_request_id():
    """Before-request hook. Reuses a well-formed incoming id."""
    incoming = request.headers.get(REQUEST_ID_HEADER, "")
    if incoming.startswith("req_") and 4 < len(incoming) <= 64 and incoming.isprintable():
        g.request_id = incoming
    else:
        g.request_id = new_request_id()


def add_request_id_header(response):
    request_id = g.get("request_id")
    if request_id:
        response.headers[REQUEST_ID_HEADER] = request_id
    return response


class RequestIdFilter(logging.Filter):
    """Adds `request_id` to every record ("-" outside a request)."""

    def filter(self, record):
        if has_request_context():
            record.request_id = g.get("request_id", "-")
        else:
            record.request_id = "-"
        return True


def install_log_filter(logger=None):
    """Attach RequestIdFilter to every handler on `logger` (root by default)."""
    logger = logger or logging.getLogger()
    for handler in logger.handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())


def init_request_id_middleware(app):
    """Register the request id hooks."""
    app.before_request(assign_request_id)
    app.after_request(add_request_id_header)
