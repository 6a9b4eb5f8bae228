"""
Idempotency gate — decide whether a unit's install action must run.
"""

from __future__ import annotations

import logging

from aiprovision.core.models.unit import InstallUnit

logger = logging.getLogger(__name__)


def should_install(unit: InstallUnit) -> bool:
    """True when ``unit`` is not yet present and its action must run.

    A presence check that raises (a probed command is missing, a path
    is unreadable) counts as "not present".  The error is logged at
    DEBUG and never propagated.
    """
    try:
        present = bool(unit.presence_check())
    except Exception as e:
        logger.debug("Presence check for '%s' failed (%s) — treating as absent", unit.name, e)
        return True
    return not present
