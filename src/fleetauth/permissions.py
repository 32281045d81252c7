"""Role based access to back-office modules.

Pure functions over a :class:`~fleetauth.models.UserProfile`; consumers call
them with ``reconciler.state.profile``. A missing profile or role grants
nothing beyond the dashboard listing.
"""

from __future__ import annotations

from enum import StrEnum

from fleetauth.models import UserProfile, UserRole


class FleetModule(StrEnum):
    DASHBOARD = "dashboard"
    ORDENES = "ordenes"
    VEHICULOS = "vehiculos"
    CONDUCTORES = "conductores"
    RUTAS = "rutas"
    MULTAS = "multas"
    FLUJO_CAJA = "flujo_caja"
    INDICADORES_VEHICULO = "indicadores_vehiculo"
    INDICADORES_CONDUCTOR = "indicadores_conductor"
    LIQUIDACIONES = "liquidaciones"
    TALLERES = "talleres"
    MANTENIMIENTO_VEHICULOS = "mantenimiento_vehiculos"
    SEGUROS = "seguros"
    IMPUESTOS_VEHICULARES = "impuestos_vehiculares"
    CLIENTES = "clientes"


class Action(StrEnum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"


_ALL_MODULES: tuple[FleetModule, ...] = tuple(FleetModule)

FULL_ACCESS_ROLES: frozenset[UserRole] = frozenset({UserRole.ADMIN, UserRole.DIRECTOR, UserRole.GERENTE})

ROLE_MODULES: dict[UserRole, tuple[FleetModule, ...]] = {
    UserRole.ADMIN: _ALL_MODULES,
    UserRole.DIRECTOR: _ALL_MODULES,
    UserRole.GERENTE: _ALL_MODULES,
    UserRole.COORDINADOR: (
        FleetModule.DASHBOARD,
        FleetModule.ORDENES,
        FleetModule.RUTAS,
        FleetModule.CONDUCTORES,
        FleetModule.VEHICULOS,
        FleetModule.TALLERES,
        FleetModule.MANTENIMIENTO_VEHICULOS,
    ),
    UserRole.SUPERVISOR: (
        FleetModule.DASHBOARD,
        FleetModule.VEHICULOS,
        FleetModule.MANTENIMIENTO_VEHICULOS,
        FleetModule.TALLERES,
        FleetModule.SEGUROS,
        FleetModule.IMPUESTOS_VEHICULARES,
    ),
    UserRole.RECURSOS_HUMANOS: (
        FleetModule.DASHBOARD,
        FleetModule.CONDUCTORES,
        FleetModule.MULTAS,
        FleetModule.LIQUIDACIONES,
    ),
    UserRole.ADMINISTRATIVO: (
        FleetModule.DASHBOARD,
        FleetModule.CONDUCTORES,
        FleetModule.MULTAS,
        FleetModule.LIQUIDACIONES,
    ),
    UserRole.CONTADOR: (
        FleetModule.DASHBOARD,
        FleetModule.FLUJO_CAJA,
        FleetModule.LIQUIDACIONES,
        FleetModule.IMPUESTOS_VEHICULARES,
        FleetModule.SEGUROS,
        FleetModule.INDICADORES_VEHICULO,
    ),
    UserRole.COMERCIAL: (FleetModule.DASHBOARD, FleetModule.CLIENTES, FleetModule.ORDENES),
    UserRole.ATENCION_CLIENTE: (FleetModule.DASHBOARD, FleetModule.CLIENTES, FleetModule.ORDENES),
    UserRole.CONDUCTOR: (FleetModule.DASHBOARD, FleetModule.ORDENES, FleetModule.RUTAS, FleetModule.MULTAS),
}


def check_permission(
    profile: UserProfile | None,
    module: FleetModule | str,
    action: Action | str = Action.VIEW,
) -> bool:
    """Whether *profile* may perform *action* on *module*."""
    if profile is None or profile.role is None:
        return False
    role = profile.role
    module = FleetModule(module)
    action = Action(action)

    if role in FULL_ACCESS_ROLES:
        return True
    if module not in ROLE_MODULES.get(role, ()):
        return False

    if role in (UserRole.COMERCIAL, UserRole.ATENCION_CLIENTE):
        # Orders are read-only for customer-facing roles.
        return action == Action.VIEW if module == FleetModule.ORDENES else True
    if role == UserRole.CONDUCTOR:
        return action == Action.VIEW
    if role in (UserRole.RECURSOS_HUMANOS, UserRole.ADMINISTRATIVO):
        return not (module == FleetModule.MULTAS and action == Action.DELETE)
    return True


def can_access_module(profile: UserProfile | None, module: FleetModule | str) -> bool:
    return check_permission(profile, module, Action.VIEW)


def visible_modules(profile: UserProfile | None) -> list[FleetModule]:
    """Modules to list in navigation for *profile*."""
    if profile is None or profile.role is None:
        return [FleetModule.DASHBOARD]
    return list(ROLE_MODULES.get(profile.role, (FleetModule.DASHBOARD,)))
