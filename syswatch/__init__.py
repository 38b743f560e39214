"""Host telemetry collection, threshold alerting and live broadcast."""

__version__ = "1.0.0"
