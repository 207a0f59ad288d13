# core/request_context.py
import uuid
from contextvars import ContextVar
from typing import Optional

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id to the current task context, generating one if needed."""
    request_id = request_id or uuid.uuid4().hex
    _request_id.set(request_id)
    return request_id
