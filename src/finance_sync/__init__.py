"""NetSuite / Kissflow / Google Sheets sync jobs for the finance team."""
