"""Edge node core: application reconciliation, downside commands, event forwarding and activation."""

__version__ = "2.0.0"
__all__ = ["activate", "apps", "config", "downside", "engine", "eventx", "models"]