"""App-scoped profiling: permission provisioning and in-sandbox data collection."""

__version__ = "0.1.0"
