"""Command-line interface for the provisioning engine."""

__version__ = "0.1.0"
