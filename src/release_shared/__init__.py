"""Shared models, constants, exceptions and utilities for the release pipeline.

Every stage package (scan_gate, publisher, notifier, ecs_deploy) and the
release_orchestrator depend on this package; it depends on nothing else in
``src``.
"""

__version__ = "1.0.0"
