"""HemoBank: blood-unit lifecycle, reservation and alerting service."""

__version__ = "1.0.0"
