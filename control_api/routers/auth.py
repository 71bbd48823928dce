# control_api/routers/auth.py
from fastapi import APIRouter, Depends

from control_api.auth import AuthSession, get_auth_session

router = APIRouter()


@router.get("/auth/status")
def auth_status(session: AuthSession = Depends(get_auth_session)):
    """What the current request is allowed to do."""
    return {
        "authenticated": session.is_authenticated,
        "is_admin": session.is_admin,
        "display_name": session.display_name,
        "user_info": session.user_info,
    }
