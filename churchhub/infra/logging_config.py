from __future__ import annotations

import logging
import os

from churchhub.infra.context import get_organization_id, get_user_id

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] org=%(organization_id)s user=%(user_id)s %(message)s"


class RequestContextFilter(logging.Filter):
    """Stamp each record with the organization and user of the current request."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.organization_id = get_organization_id() or "-"
        record.user_id = get_user_id() or "-"
        return True


def configure_logging(level: str | None = None) -> None:
    resolved = (level or LOG_LEVEL).upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=LOG_FORMAT)
    root = logging.getLogger()
    for handler in root.handlers:
        if not any(isinstance(item, RequestContextFilter) for item in handler.filters):
            handler.addFilter(RequestContextFilter())
