"""CivicTrack: civic issue lifecycle and SLA escalation service."""

__version__ = "1.0.0"
