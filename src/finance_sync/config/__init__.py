"""Environment-driven settings and bundled config files (schedule, PO item map)."""
