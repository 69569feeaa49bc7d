"""Error taxonomy shared by the cache, executor and reconciler."""

import logging
from typing import Optional

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError

logger = logging.getLogger(__name__)

RETRIABLE_STATUSES = frozenset({0, 429, 500, 502, 503, 504})


class ControllerError(Exception):
    """Base class for all controller errors."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class TransientClusterError(ControllerError):
    """Network failure or throttling; retried with backoff."""


class ConflictError(ControllerError):
    """The object changed since it was read; re-evaluate, never retry verbatim."""


class PolicyError(ControllerError):
    """Malformed or unsatisfiable SpreadPolicy; surfaced via status conditions."""


class FatalError(ControllerError):
    """Lease or cache subscription permanently unavailable."""


class MalformedObjectError(ControllerError):
    """A cluster object failed validation at the cache ingestion boundary."""


class ReconcileCancelled(ControllerError):
    """The reconciliation was stopped by shutdown or lost leadership."""


def classify_api_error(exc: Exception, context: str = "") -> ControllerError:
    """
    Map a Kubernetes client exception onto the error taxonomy.

    Args:
        exc: Exception raised by a kubernetes client call
        context: Short description of the call, used in the message

    Returns:
        A ControllerError subclass instance (not raised)
    """
    prefix = f"{context}: " if context else ""

    if isinstance(exc, ControllerError):
        return exc

    if isinstance(exc, ApiException):
        status = exc.status or 0
        detail = f"{prefix}{status} {exc.reason or ''}".strip()
        if status in (404, 409):
            return ConflictError(detail, status=status)
        if status in RETRIABLE_STATUSES:
            return TransientClusterError(detail, status=status)
        return PolicyError(detail, status=status)

    if isinstance(exc, (TransportError, ConnectionError, TimeoutError)):
        return TransientClusterError(f"{prefix}{exc}")

    logger.debug(f"Unclassified error {type(exc).__name__}, treating as transient")
    return TransientClusterError(f"{prefix}{exc}")
