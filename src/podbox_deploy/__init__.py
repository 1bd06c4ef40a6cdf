"""
podbox-deploy - Single-host deployment orchestrator for podbox.

This package replaces the live podbox deployment (backend code, web assets,
database, auxiliary content) with a staged update, verifies the result, and
restores the latest backup unit when anything after the backup fails.
"""

__version__ = "2.0.0"
