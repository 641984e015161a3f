"""
auth/permissions.py -- Role -> (resource, action) permission table.

Every protected operation consults ROLE_PERMISSIONS through authorize(). There
are no per-endpoint role conditionals anywhere else: adding a role or a
resource is an edit to the table below, and tests/test_permissions.py walks
every (role, resource, action) combination.

authorize() is pure -- no I/O, no logging, no state.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable

ADMIN = "admin"
TERAPEUTA = "terapeuta"
SECRETARIA = "secretaria"

ROLES: tuple[str, ...] = (ADMIN, TERAPEUTA, SECRETARIA)

RESOURCES: tuple[str, ...] = (
    "agendamentos",
    "pacientes",
    "sessoes",
    "terapeutas",
    "transacoes",
    "convites",
    "usuarios",
    "perfil",
)

ACTIONS: tuple[str, ...] = ("list", "read", "create", "update", "delete")

_ALL_ACTIONS = frozenset(ACTIONS)
_READ_ONLY = frozenset({"list", "read"})


def _grant(resource: str, actions: Iterable[str]) -> frozenset[tuple[str, str]]:
    return frozenset((resource, action) for action in actions)


ROLE_PERMISSIONS: dict[str, frozenset[tuple[str, str]]] = {
    ADMIN: frozenset((resource, action) for resource in RESOURCES for action in ACTIONS),
    # Therapists see their own agenda and patients; row-level filtering of
    # "own" records belongs to the business endpoints, not this table.
    TERAPEUTA: (
        _grant("agendamentos", _ALL_ACTIONS)
        | _grant("pacientes", _READ_ONLY)
        | _grant("terapeutas", {"list", "read", "update"})
        | _grant("perfil", {"read", "update"})
    ),
    SECRETARIA: (
        _grant("agendamentos", _ALL_ACTIONS)
        | _grant("pacientes", _ALL_ACTIONS)
        | _grant("sessoes", _ALL_ACTIONS)
        | _grant("terapeutas", _ALL_ACTIONS)
        | _grant("transacoes", _ALL_ACTIONS)
        | _grant("perfil", {"read", "update"})
    ),
}

# Spellings seen in older records and imports.
_ROLE_ALIASES = {
    "administrador": ADMIN,
    "secretária": SECRETARIA,
    "secretario": SECRETARIA,
    "secretário": SECRETARIA,
}

# Path prefix -> resource, for callers that gate by URL. Longest prefix wins.
ROUTE_RESOURCES: dict[str, str] = {
    "/api/v1/agendamentos": "agendamentos",
    "/api/v1/pacientes": "pacientes",
    "/api/v1/sessoes": "sessoes",
    "/api/v1/terapeutas": "terapeutas",
    "/api/v1/transacoes": "transacoes",
    "/api/v1/invites": "convites",
    "/api/v1/users": "usuarios",
    "/api/v1/admin": "usuarios",
    "/dashboard/agenda": "agendamentos",
    "/dashboard/pacientes": "pacientes",
    "/dashboard/sessoes": "sessoes",
    "/dashboard/terapeutas": "terapeutas",
    "/dashboard/transacoes": "transacoes",
    "/dashboard/convites": "convites",
    "/dashboard/usuarios": "usuarios",
    "/dashboard/perfil": "perfil",
}


def normalize_role(role: str | None) -> str | None:
    """Lowercase a role and map known aliases. Returns None for empty input."""
    if not role:
        return None
    lowered = role.strip().lower()
    return _ROLE_ALIASES.get(lowered, lowered)


def is_valid_role(role: str | None) -> bool:
    return normalize_role(role) in ROLE_PERMISSIONS


def permissions_for(role: str | None) -> frozenset[tuple[str, str]]:
    """Return every (resource, action) pair the role holds; empty for unknown roles."""
    normalized = normalize_role(role)
    if normalized is None:
        return frozenset()
    return ROLE_PERMISSIONS.get(normalized, frozenset())


def authorize(role: str | None, resource: str, action: str) -> bool:
    """Return True if role may perform action on resource."""
    return (resource, action) in permissions_for(role)


def resources_for(role: str | None) -> list[str]:
    """Resources the role can reach with at least one action, in RESOURCES order."""
    held = {resource for resource, _ in permissions_for(role)}
    return [r for r in RESOURCES if r in held]


def resource_for_path(path: str) -> str | None:
    """Map a request path to its resource by longest matching prefix.

    Query strings and fragments are ignored. A prefix matches only on a path
    segment boundary, so "/api/v1/usersettings" does not map to "usuarios".
    """
    clean = path.split("?", 1)[0].split("#", 1)[0].rstrip("/")
    best: str | None = None
    for prefix in ROUTE_RESOURCES:
        if clean == prefix or clean.startswith(prefix + "/"):
            if best is None or len(prefix) > len(best):
                best = prefix
    return ROUTE_RESOURCES[best] if best is not None else None
