"""
Clinic Migration

Moves a clinic's operational data out of a legacy practice management
platform and into a canonical target system.

Supports:
- Three ingest strategies (vendor API, browser automation, uploaded exports)
- PHI-safe profiling and assistant-drafted mapping specs
- A human approval gate before any data is transformed
- Idempotent, dependency-ordered promotion with duplicate detection
- Cooperative pause and resume at batch boundaries
- Reconciliation reports with per-record audit trails
"""

__version__ = "0.1.0"
