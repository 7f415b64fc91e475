"""
Street Patrol Log - local accounts and the per-request Session value.
"""
from .models import Session, UserRepository, session_from_mapping
from .routes import get_session, register_auth_routes

__all__ = [
    "Session",
    "UserRepository",
    "session_from_mapping",
    "get_session",
    "register_auth_routes",
]
