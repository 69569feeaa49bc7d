"""Client for interacting with the SpreadPolicy CRD."""

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

from .config import API_REQUEST_TIMEOUT_SECONDS, CRD_GROUP, CRD_PLURAL, CRD_VERSION
from .errors import classify_api_error
from .utils import merge_patch

logger = logging.getLogger(__name__)


class SpreadPolicyClient:
    """Client for SpreadPolicy custom resources."""

    def __init__(self, custom_api: Optional[client.CustomObjectsApi] = None):
        """Initialize the CRD client."""
        self.custom_api = custom_api or client.CustomObjectsApi()

    def list_call(self, namespace: str = "") -> Tuple[Callable, Dict[str, Any]]:
        """
        Return the list function and its arguments, for list+watch.

        Args:
            namespace: Namespace to list from ("" for all namespaces)

        Returns:
            Tuple of (list function, keyword arguments)
        """
        if namespace:
            return self.custom_api.list_namespaced_custom_object, {
                "group": CRD_GROUP,
                "version": CRD_VERSION,
                "namespace": namespace,
                "plural": CRD_PLURAL,
            }
        return self.custom_api.list_cluster_custom_object, {
            "group": CRD_GROUP,
            "version": CRD_VERSION,
            "plural": CRD_PLURAL,
        }

    def update_policy_status(
        self,
        name: str,
        namespace: str,
        status: Dict[str, Any],
        previous: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Replace the status of a SpreadPolicy through the status subresource.

        Args:
            name: Policy name
            namespace: Policy namespace
            status: Complete status block
            previous: Status currently stored, whose stale keys are removed

        Raises:
            ControllerError: the patch failed, classified
        """
        try:
            self.custom_api.patch_namespaced_custom_object_status(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=namespace,
                plural=CRD_PLURAL,
                name=name,
                body={"status": merge_patch(previous, status)},
                _request_timeout=API_REQUEST_TIMEOUT_SECONDS,
            )
        except ApiException as e:
            logger.error(f"Error updating status of policy {namespace}/{name}: {e.status} {e.reason}")
            raise classify_api_error(e, f"update status of {namespace}/{name}") from e

        logger.debug(f"Updated status for policy {namespace}/{name}")
