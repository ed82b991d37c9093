"""Distribution scheduling and per-plan locks."""
