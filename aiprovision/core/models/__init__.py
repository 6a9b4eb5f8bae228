"""
Domain models for the provisioning runner.

All models are re-exported here for convenient access:

    from aiprovision.core.models import InstallUnit, DownloadSpec, Outcome
"""

from aiprovision.core.models.config import ProvisionConfig, RetrySettings
from aiprovision.core.models.download import CredentialRule, DownloadSpec, derive_filename
from aiprovision.core.models.outcome import Outcome
from aiprovision.core.models.unit import (
    DownloadUnit,
    DownloadVariant,
    InstallUnit,
    RetryPolicy,
    TextRewrite,
    Unit,
)

__all__ = [
    # download.py
    "CredentialRule",
    "DownloadSpec",
    # unit.py
    "DownloadUnit",
    "DownloadVariant",
    "InstallUnit",
    # outcome.py
    "Outcome",
    # config.py
    "ProvisionConfig",
    "RetryPolicy",
    "RetrySettings",
    "TextRewrite",
    "Unit",
    "derive_filename",
]
