from .security import create_access_token, verify_token
from .dependencies import get_current_user, get_current_active_user, require_admin, get_current_agent
from .responses import success_response, error_response

__all__ = [
    "create_access_token",
    "verify_token",
    "get_current_user",
    "get_current_active_user",
    "require_admin",
    "get_current_agent",
    "success_response",
    "error_response",
]
