"""Data models for auth sessions and user profiles."""

from fleetauth.models._base import FleetBaseModel, FleetEnum, Timestamp, parse_timestamp
from fleetauth.models.profile import ROLE_NAMES, UserProfile, UserRole, role_display_name
from fleetauth.models.session import AuthUser, Session

__all__ = [
    "AuthUser",
    "FleetBaseModel",
    "FleetEnum",
    "ROLE_NAMES",
    "Session",
    "Timestamp",
    "UserProfile",
    "UserRole",
    "parse_timestamp",
    "role_display_name",
]
