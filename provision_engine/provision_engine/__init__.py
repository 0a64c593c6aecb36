"""Sequential host provisioning with pre-flight checks, snapshot rollback and post-run verification."""

__version__ = "0.1.0"
