"""Integration adapters for external systems (NetSuite, Kissflow, Google Sheets).

Keep these modules small and testable:
- No database access
- No job/CLI concerns
- Pure IO + payload/parsing helpers
"""
