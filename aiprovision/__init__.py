"""aiprovision — idempotent provisioning runner for AI workstations."""

__version__ = "0.1.0"
