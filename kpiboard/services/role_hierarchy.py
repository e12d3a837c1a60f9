"""
Institutional role hierarchy.

The role list and the direct-reports table are compiled constants: they
change with a release, never at runtime. Everything that needs to know
whether one role may act on another goes through ``can_assign_to``.

Rules:
    - The four top roles may assign to anyone.
    - Any other role may assign only to its transitive descendants.
"""

from functools import lru_cache

ALL_ROLES = (
    # Ultimate authority
    "Super Admin",

    # Top-tier
    "Rector",
    "Deputy Rector",
    "Secretary of the Institute",
    "Director of Internal Audit",

    # Academic leadership
    "Deans of Schools and Faculty",
    "Associate Deans",
    "Dean of Students",

    # Academic directorates (Deputy-Rector stream)
    "Director of APQA",
    "Director of GTC",
    "Head of IP&D",
    "Librarian",
    "Director of Academic Affairs",

    # Non-academic directorates (Secretary stream)
    "Director of Human Resource",
    "Director of Estate and Municipal Services",
    "Director of Hospitality",
    "Director of Corporate Affairs & Institutional Advancement",
    "Director of Finance",
    "Director of Information Management Services",
    "Director of Medical and Health Services",
    "Director of Legal Compliance Office",

    # Mid-tier academic
    "Heads of Departments",
    "Campus Managers",
    "Heads of Centers",
    "Professors",
    "Institute's Scholars & Fellows",
    "Associate Professors / Principal Lecturers",
    "Senior Lecturers / Senior Teaching / Senior Research Fellows",
    "Lecturers / Teaching / Research Fellows",
    "Assistant Lecturers",

    # Registrar stream
    "Directors",
    "Deputy Registrars",
    "Heads of Units / Senior Assistant Registrars",
    "Assistant Registrars / Programme Coordinators",
    "Junior Assistant Registrars",
    "Middle & Junior Staff",
)

SUPER_ADMIN = "Super Admin"

TOP_ROLES = frozenset({
    SUPER_ADMIN,
    "Rector",
    "Deputy Rector",
    "Secretary of the Institute",
})

_DIRECTOR_STREAM = (
    "Directors",
    "Director of Academic Affairs",
    "Director of Human Resource",
    "Director of Estate and Municipal Services",
    "Director of Hospitality",
    "Director of Corporate Affairs & Institutional Advancement",
    "Director of Finance",
    "Director of Information Management Services",
    "Director of Medical and Health Services",
    "Director of Legal Compliance Office",
)

# Direct reports only; transitive closure is computed on demand
DIRECT_REPORTS: dict[str, tuple[str, ...]] = {
    SUPER_ADMIN: (
        "Rector",
        "Deputy Rector",
        "Secretary of the Institute",
        "Director of Internal Audit",
    ),
    "Rector": (
        "Deputy Rector",
        "Secretary of the Institute",
        "Director of Internal Audit",
    ),
    "Deputy Rector": (
        "Deans of Schools and Faculty",
        "Dean of Students",
        "Director of APQA",
        "Director of GTC",
        "Head of IP&D",
        "Librarian",
        "Director of Academic Affairs",
    ),
    "Secretary of the Institute": (
        "Director of Academic Affairs",
        "Director of Human Resource",
        "Director of Estate and Municipal Services",
        "Director of Hospitality",
        "Director of Corporate Affairs & Institutional Advancement",
        "Director of Finance",
        "Director of Information Management Services",
        "Director of Medical and Health Services",
        "Director of Legal Compliance Office",
    ),
    "Director of Internal Audit": (),
    "Deans of Schools and Faculty": (
        "Associate Deans",
        "Deputy Registrars",
        "Heads of Units / Senior Assistant Registrars",
    ),
    "Associate Deans": ("Heads of Departments", "Campus Managers", "Heads of Centers"),
    "Heads of Departments": ("Professors", "Institute's Scholars & Fellows"),
    "Campus Managers": ("Professors", "Institute's Scholars & Fellows"),
    "Heads of Centers": ("Professors", "Institute's Scholars & Fellows"),
    "Professors": ("Associate Professors / Principal Lecturers",),
    "Institute's Scholars & Fellows": ("Associate Professors / Principal Lecturers",),
    "Associate Professors / Principal Lecturers": (
        "Senior Lecturers / Senior Teaching / Senior Research Fellows",
    ),
    "Senior Lecturers / Senior Teaching / Senior Research Fellows": (
        "Lecturers / Teaching / Research Fellows",
    ),
    "Lecturers / Teaching / Research Fellows": ("Assistant Lecturers",),
    "Assistant Lecturers": (),
    **{director: ("Deputy Registrars",) for director in _DIRECTOR_STREAM},
    "Deputy Registrars": ("Heads of Units / Senior Assistant Registrars",),
    "Heads of Units / Senior Assistant Registrars": (
        "Assistant Registrars / Programme Coordinators",
    ),
    "Assistant Registrars / Programme Coordinators": ("Junior Assistant Registrars",),
    "Junior Assistant Registrars": ("Middle & Junior Staff",),
    "Middle & Junior Staff": (),
}


def is_super_admin(role: str | None) -> bool:
    return role == SUPER_ADMIN


def is_top_role(role: str | None) -> bool:
    return bool(role) and role in TOP_ROLES


def get_accessible_roles(role: str | None) -> list[str]:
    """Direct reports of ``role``."""
    return list(DIRECT_REPORTS.get(role, ()))


@lru_cache(maxsize=None)
def _descendants(role: str) -> frozenset[str]:
    seen: set[str] = set()
    stack = list(DIRECT_REPORTS.get(role, ()))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(DIRECT_REPORTS.get(current, ()))
    return frozenset(seen)


def get_all_descendant_roles(role: str | None) -> list[str]:
    """Every role reachable below ``role``, in canonical order."""
    if not role:
        return []
    below = _descendants(role)
    return [r for r in ALL_ROLES if r in below]


def can_assign_to(caller_role: str | None, target_role: str | None) -> bool:
    """Whether a caller holding ``caller_role`` may target ``target_role``."""
    if is_top_role(caller_role):
        return True
    if not caller_role or not target_role:
        return False
    return target_role in _descendants(caller_role)
