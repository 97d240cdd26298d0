"""Scheduling components: rate/quiet gate, recurrence rules, job orchestrator."""
