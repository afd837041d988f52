import contextvars
from typing import Optional

# Context variables for request and trace id
request_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)

SYSTEM_ACTOR = "system"
GUEST_ACTOR = "guest"
