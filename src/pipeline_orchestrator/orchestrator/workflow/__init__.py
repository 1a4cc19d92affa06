"""Workflow domain concepts.

This package holds first-class types for:
- Workflow, job and step definitions loaded from YAML
- The condition/interpolation expression language
- Matrix expansion and dependency layering
- The bounded-concurrency scheduler and its per-job state machine

Import the submodules directly; nothing is re-exported here.
"""

__all__: list[str] = []
