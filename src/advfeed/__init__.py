"""Adventure feed visibility and activity-confirmation engine."""

__version__ = "0.1.0"
