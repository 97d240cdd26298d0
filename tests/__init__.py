"""Lyra Notify Test Suite

Test organization:
- unit/: Unit tests for individual modules
  - templates/: Template registry and rendering
  - queue/: Rate/quiet gate, recurrence rules, orchestrator
  - push/: Dispatcher retry/concurrency, device directory
  - persistence/: SQLite job table and send audit trail
  - preferences/: Preference store defaults and overrides

Running tests:
    # All tests
    pytest

    # Specific module
    pytest tests/unit/queue/
"""
