"""Anonymized telemetry ingestion and governance engine.

Anonymous clients may only insert events and workflow summaries; privileged
operators read, delete and maintain the data, and every privileged action is
audited.
"""

__version__ = "0.1.0"

__all__ = ["config", "errors", "telemetry_store"]
