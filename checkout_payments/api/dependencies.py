"""FastAPI dependencies."""
from typing import Optional

from fastapi import Header, Request

from checkout_payments.container import ServiceContainer
from checkout_payments.core.collaborators import Requester


def get_container(request: Request) -> ServiceContainer:
    """Services built in the application lifespan."""
    return request.app.state.container


def get_requester(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_session_id: Optional[str] = Header(default=None, alias="X-Session-Id"),
) -> Requester:
    """
    Caller identity forwarded by the authentication layer.

    Raises:
        AuthenticationRequiredError: If neither header is present
    """
    return Requester(user_id=x_user_id or None, session_id=x_session_id or None)
