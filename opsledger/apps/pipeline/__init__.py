"""CI/CD pipeline demo: log a build to the ledger and print the dashboard."""

from opsledger.apps.pipeline.main import log_build, render_table

__all__ = ["log_build", "render_table"]
