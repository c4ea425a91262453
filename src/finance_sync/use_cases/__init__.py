"""Use-case level jobs.

These modules wire integrations (NetSuite, Kissflow, Google Sheets) to the
local store. Each job returns a small result object with counters; the CLI
turns that into an exit code.
"""
