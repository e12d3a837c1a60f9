"""KPI scoring core: templates, per-user state, patches, discrepancies, projection."""
