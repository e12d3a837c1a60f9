"""
Department scoping for KPI targeting.

A top role may target every department. Anyone else may target the
department they belong to, the departments they supervise, and every
department below those in the tree.
"""

from __future__ import annotations

from sqlalchemy import select

from kpiboard.models import db
from kpiboard.models.org import Department, department_supervisors
from kpiboard.services.role_hierarchy import is_top_role


def _subtree_ids(root_ids: set[int]) -> set[int]:
    parents = dict(db.session.execute(select(Department.id, Department.parent_id)).all())
    children: dict[int, list[int]] = {}
    for dept_id, parent_id in parents.items():
        if parent_id is not None:
            children.setdefault(parent_id, []).append(dept_id)

    seen: set[int] = set()
    queue = [i for i in root_ids if i in parents]
    while queue:
        current = queue.pop(0)
        if current in seen:
            continue
        seen.add(current)
        queue.extend(children.get(current, []))
    return seen


def get_accessible_department_ids_for(user) -> set[int]:
    if user is None:
        return set()
    if is_top_role(user.role):
        return set(db.session.execute(select(Department.id)).scalars())

    roots = set(db.session.execute(
        select(department_supervisors.c.department_id)
        .where(department_supervisors.c.user_id == user.id)
    ).scalars())
    if user.department_id is not None:
        roots.add(user.department_id)
    return _subtree_ids(roots)
