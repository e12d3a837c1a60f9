"""
KPI weight recomputation.

Within one academic year every KPI weighs ``100 / N`` and each of its M
deliverables weighs ``(100 / N) / M``. The academic year rolls over in
September: 2025-09-01 belongs to "2025-2026", 2025-08-31 to "2024-2025".
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm.attributes import flag_modified

from kpiboard.models import db
from kpiboard.models.kpi import Kpi

logger = logging.getLogger(__name__)

ACADEMIC_YEAR_START_MONTH = 9
TOTAL_WEIGHT = 100.0


def academic_year_key(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    end_year = moment.year + (1 if moment.month >= ACADEMIC_YEAR_START_MONTH else 0)
    return f"{end_year - 1}-{end_year}"


def split_weights(deliverable_counts: list[int]) -> list[tuple[float, float]]:
    """``[(kpi_weight, per_deliverable_weight), ...]`` for one year's KPIs."""
    if not deliverable_counts:
        return []
    kpi_weight = TOTAL_WEIGHT / len(deliverable_counts)
    return [(kpi_weight, kpi_weight / count if count else 0.0) for count in deliverable_counts]


def recompute_weights(academic_year: str) -> int:
    """Rewrite weights of every KPI in ``academic_year``; returns the KPI count.

    Rows whose weights already match are left untouched so their revision
    does not move.
    """
    kpis = db.session.execute(
        select(Kpi).where(Kpi.academic_year == academic_year).order_by(Kpi.id)
    ).scalars().all()

    for kpi, (kpi_weight, each) in zip(kpis, split_weights([len(k.deliverables or []) for k in kpis])):
        if kpi.weight != kpi_weight:
            kpi.weight = kpi_weight
        templates = kpi.deliverables or []
        if any(t.get("weight") != each for t in templates):
            kpi.deliverables = [{**t, "weight": each} for t in templates]
            flag_modified(kpi, "deliverables")

    logger.info("Recomputed weights for %d KPIs", len(kpis), extra={"action": f"weights:{academic_year}"})
    return len(kpis)


def recompute_all_weights() -> dict[str, int]:
    years = db.session.execute(select(Kpi.academic_year).distinct()).scalars().all()
    return {year: recompute_weights(year) for year in sorted(years)}
