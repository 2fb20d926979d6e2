"""Token Alert Hub - rule-driven alerting and realtime broadcast for token events."""

__version__ = "0.1.0"
