"""Local cache of NetSuite reference data and budget/journal bookkeeping (SQLAlchemy)."""
