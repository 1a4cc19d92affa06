"""Core orchestrator components.

- `workflow`: definitions, expressions, planning and scheduling
- `deploy`: environment promotion and rollback
- settings, structured logging and the CLI surface
"""
