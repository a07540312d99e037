"""Student Risk Tracker: data-completion and synchronization controller."""

__version__ = "1.0.0"
