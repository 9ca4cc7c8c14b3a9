"""Query live state for everything the declaration mentions."""

from __future__ import annotations

import logging

from converge.capabilities.selection import Backends
from converge.errors import ConvergeError
from converge.models.state import ActualState, DeclaredState

logger = logging.getLogger(__name__)


def query_actual_state(declared: DeclaredState, backends: Backends) -> ActualState:
    """Build a fresh ``ActualState``.

    A backend that is unavailable, or whose query fails, is reported as
    ``None`` for its category rather than aborting the whole query.
    """
    actual = ActualState()

    if declared.packages:
        actual.packages = _query_packages(backends)

    if declared.services:
        actual.services = _query_services(declared, backends)

    for spec in declared.files.values():
        actual.files[spec.destination] = backends.files.entry_kind(spec.destination)
        actual.sources[spec.source] = backends.files.entry_kind(spec.source)

    return actual


def _query_packages(backends: Backends) -> dict[str, str] | None:
    pm = backends.packages
    if not pm.is_available():
        logger.warning("Package backend '%s' is not available", pm.name)
        return None
    try:
        return pm.list_installed()
    except (ConvergeError, RuntimeError, OSError) as e:
        logger.warning("Could not list installed packages: %s", e)
        return None


def _query_services(declared: DeclaredState, backends: Backends):
    sm = backends.services
    if not sm.is_available():
        logger.warning("Service backend '%s' is not available", sm.name)
        return None
    statuses = {}
    try:
        for spec in declared.services.values():
            statuses[(spec.name, spec.scope)] = sm.status(spec.name, spec.scope)
    except (ConvergeError, OSError) as e:
        logger.warning("Could not query service state: %s", e)
        return None
    return statuses
