"""Error taxonomy for the andon board.

Local state-machine violations fail loudly (``ValidationError`` and
``NotFoundError`` reach the caller). Third-party failures are wrapped in
``ExternalIntegrationError`` and never fail the triggering operation.
``PersistenceError`` is logged and does not roll back in-memory state.
"""

from __future__ import annotations


class AndonError(Exception):
    """Base class for all andon board errors."""

    code = "error"
    status_code = 500


class ValidationError(AndonError):
    """Bad or missing input, or an illegal state transition."""

    code = "validation_error"
    status_code = 400


class NotFoundError(AndonError):
    """Unknown department, cell, or ticket."""

    code = "not_found"
    status_code = 404


class ExternalIntegrationError(AndonError):
    """The CMMS or a notification endpoint failed or timed out."""

    code = "external_error"
    status_code = 502


class PersistenceError(AndonError):
    """A durable write (log append or snapshot save) failed."""

    code = "persistence_error"
    status_code = 500
