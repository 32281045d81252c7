"""Application profile model (one row per auth user)."""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BeforeValidator, Field

from fleetauth.models._base import FleetBaseModel, FleetEnum, Timestamp


class UserRole(FleetEnum):
    """Back-office roles stored in the ``role`` column."""

    ADMIN = "admin"
    DIRECTOR = "director"
    GERENTE = "gerente"
    COORDINADOR = "coordinador"
    SUPERVISOR = "supervisor"
    RECURSOS_HUMANOS = "recursos_humanos"
    ADMINISTRATIVO = "administrativo"
    CONTADOR = "contador"
    COMERCIAL = "comercial"
    ATENCION_CLIENTE = "atencion_cliente"
    CONDUCTOR = "conductor"
    UNKNOWN = "unknown"


ROLE_NAMES: dict[UserRole, str] = {
    UserRole.ADMIN: "Administrador",
    UserRole.DIRECTOR: "Director",
    UserRole.GERENTE: "Gerente",
    UserRole.COORDINADOR: "Coordinador",
    UserRole.SUPERVISOR: "Supervisor",
    UserRole.RECURSOS_HUMANOS: "Recursos Humanos",
    UserRole.ADMINISTRATIVO: "Administrativo",
    UserRole.CONTADOR: "Contador",
    UserRole.COMERCIAL: "Comercial",
    UserRole.ATENCION_CLIENTE: "Atención al Cliente",
    UserRole.CONDUCTOR: "Conductor",
}

DEFAULT_ROLE_NAME = "Usuario"


def _coerce_role(value: Any) -> UserRole | None:
    if value is None or isinstance(value, UserRole):
        return value
    return UserRole(str(value))


def role_display_name(role: UserRole | None) -> str:
    """Human-readable label for *role*."""
    if role is None:
        return DEFAULT_ROLE_NAME
    return ROLE_NAMES.get(role, DEFAULT_ROLE_NAME)


class UserProfile(FleetBaseModel):
    """A row of the profiles table.

    Column names follow the database (``nombre``/``apellido``); the Python
    attributes are ``first_name``/``last_name``.
    """

    id: str
    first_name: str | None = Field(default=None, alias="nombre")
    last_name: str | None = Field(default=None, alias="apellido")
    avatar_url: str | None = None
    role: Annotated[UserRole | None, BeforeValidator(_coerce_role)] = None
    phone: str | None = None
    department: str | None = None
    position: str | None = None
    created_at: Timestamp = None
    updated_at: Timestamp = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def role_name(self) -> str:
        return role_display_name(self.role)
