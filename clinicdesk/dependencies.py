# clinicdesk/dependencies.py
from typing import Optional

from fastapi import Header


def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> Optional[str]:
    """Caller identity as forwarded by the authenticating gateway. Used for audit fields only."""
    return x_user_id or None
