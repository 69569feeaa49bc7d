"""In-memory cache of pods, nodes and SpreadPolicy objects kept current by watches."""

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from kubernetes import watch
from kubernetes.client.rest import ApiException

from .config import (
    CACHE_BACKOFF_MAX_SECONDS,
    CACHE_DEGRADED_AFTER_FAILURES,
    CACHE_MAX_RECONNECT_ATTEMPTS,
    WATCH_TIMEOUT_SECONDS,
)
from .errors import FatalError, MalformedObjectError
from .models import AnyPolicy, NodeInfo, PodInfo, make_key, policy_from_crd
from .utils import labels_match_selector

logger = logging.getLogger(__name__)


class Kind(str, Enum):
    POLICY = "SpreadPolicy"
    POD = "Pod"
    NODE = "Node"


@dataclass(frozen=True)
class CacheEvent:
    """Change notification delivered to listeners on the ingestion thread."""
    kind: Kind
    type: str
    old: Any
    new: Any


@dataclass(frozen=True)
class ReplaceMessage:
    kind: Kind
    items: List[Any]


@dataclass(frozen=True)
class WatchMessage:
    kind: Kind
    type: str
    obj: Any


_STOP = object()


def _parse(kind: Kind, obj: Any):
    if kind == Kind.POLICY:
        if isinstance(obj, dict) and isinstance(obj.get("metadata"), dict):
            metadata = obj["metadata"]
            if metadata.get("name") and metadata.get("namespace"):
                return policy_from_crd(obj)
        raise MalformedObjectError("SpreadPolicy without metadata.name/namespace")
    if kind == Kind.POD:
        return PodInfo.from_api(obj)
    return NodeInfo.from_api(obj)


def _identity(kind: Kind, record: Any) -> str:
    if kind == Kind.NODE:
        return record.name
    return make_key(record.namespace, record.name)


def _resource_version(obj: Any) -> Optional[str]:
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get("resourceVersion")
    metadata = getattr(obj, "metadata", None)
    return getattr(metadata, "resource_version", None) if metadata is not None else None


def _list_items(response: Any):
    """Return (items, resourceVersion) for typed and custom-object list responses."""
    if isinstance(response, dict):
        return response.get("items", []), (response.get("metadata") or {}).get("resourceVersion")
    metadata = getattr(response, "metadata", None)
    return list(response.items or []), getattr(metadata, "resource_version", None)


class Reflector:
    """
    List+watch loop for one object kind.

    Runs on its own thread and only does network I/O; everything it sees is
    posted to the cache's ingestion queue.
    """

    def __init__(
        self,
        cache: "ResourceCache",
        kind: Kind,
        list_fn: Callable,
        list_kwargs: Optional[Dict[str, Any]] = None,
        resync_period: int = WATCH_TIMEOUT_SECONDS,
        degraded_after: int = CACHE_DEGRADED_AFTER_FAILURES,
        max_attempts: int = CACHE_MAX_RECONNECT_ATTEMPTS,
        backoff_max: float = CACHE_BACKOFF_MAX_SECONDS,
    ):
        self.cache = cache
        self.kind = kind
        self.list_fn = list_fn
        self.list_kwargs = list_kwargs or {}
        self.resync_period = resync_period
        self.degraded_after = degraded_after
        self.max_attempts = max_attempts
        self.backoff_max = backoff_max

        self._resource_version: Optional[str] = None
        self._needs_list = True
        self._failures = 0
        self._watch: Optional[watch.Watch] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run,
            name=f"reflector-{self.kind.value.lower()}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        if self._watch is not None:
            self._watch.stop()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def list_once(self) -> None:
        """Full list; replaces the cache contents for this kind."""
        response = self.list_fn(**self.list_kwargs)
        items, resource_version = _list_items(response)
        self.cache.submit(ReplaceMessage(self.kind, list(items)))
        self._resource_version = resource_version
        self._needs_list = False
        logger.debug(f"Listed {len(items)} {self.kind.value} object(s) at {resource_version}")

    def watch_once(self) -> None:
        """Stream events until the server closes the watch or it is stopped."""
        self._watch = watch.Watch()
        try:
            for event in self._watch.stream(
                self.list_fn,
                resource_version=self._resource_version,
                timeout_seconds=self.resync_period,
                allow_watch_bookmarks=True,
                **self.list_kwargs,
            ):
                if self.cache.stopping:
                    break
                event_type = event.get("type")
                obj = event.get("object")
                if event_type == "ERROR":
                    logger.info(f"{self.kind.value} watch reported an error event, relisting")
                    self._needs_list = True
                    return
                resource_version = _resource_version(obj)
                if resource_version:
                    self._resource_version = resource_version
                if event_type == "BOOKMARK":
                    continue
                self.cache.submit(WatchMessage(self.kind, event_type, obj))
        finally:
            self._watch.stop()
        # Periodic resync: every finished watch session is followed by a relist.
        self._needs_list = True

    def run(self) -> None:
        logger.info(f"Starting {self.kind.value} reflector")
        backoff = 1.0

        while not self.cache.stopping:
            try:
                if self._needs_list:
                    self.list_once()
                    self._failures = 0
                    backoff = 1.0
                self.watch_once()
            except ApiException as e:
                if e.status == 410:
                    logger.info(f"{self.kind.value} resourceVersion expired, relisting")
                    self._needs_list = True
                    continue
                logger.error(f"{self.kind.value} list/watch error: {e.status} {e.reason}")
                backoff = self._on_failure(backoff)
            except Exception as e:
                logger.error(f"Unexpected error in {self.kind.value} reflector: {e}")
                backoff = self._on_failure(backoff)

            if self.cache.fatal_error is not None:
                return

        logger.info(f"{self.kind.value} reflector stopped")

    def _on_failure(self, backoff: float) -> float:
        self._failures += 1
        self._needs_list = True

        if self._failures >= self.max_attempts:
            self.cache.mark_fatal(FatalError(
                f"{self.kind.value} watch could not be re-established "
                f"after {self._failures} attempts"
            ))
            return backoff
        if self._failures >= self.degraded_after:
            self.cache.mark_degraded(self.kind)

        self.cache.wait_stopping(min(backoff, self.backoff_max))
        return min(backoff * 2, self.backoff_max)


class ResourceCache:
    """
    Eventually-consistent mirror of the cluster objects the controller needs.

    Reflector threads post messages; a single ingestion thread applies them
    and notifies listeners. Readers get immutable records under a lock and
    never touch the network.
    """

    def __init__(self, namespace: str = ""):
        """
        Initialize the cache.

        Args:
            namespace: Namespace to mirror pods and policies from ("" for all)
        """
        self.namespace = namespace
        self._stores: Dict[Kind, Dict[str, Any]] = {kind: {} for kind in Kind}
        self._lock = threading.RLock()
        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._listeners: List[Callable[[CacheEvent], None]] = []
        self._synced: Set[Kind] = set()
        self._degraded: Set[Kind] = set()
        self._reflectors: List[Reflector] = []
        self._stop_event = threading.Event()
        self._synced_event = threading.Event()
        self._fatal_event = threading.Event()
        self._ingestion_thread: Optional[threading.Thread] = None
        self.fatal_error: Optional[FatalError] = None

    # Wiring

    def add_reflector(self, kind: Kind, list_fn: Callable, list_kwargs: Optional[Dict] = None,
                      **options) -> Reflector:
        reflector = Reflector(self, kind, list_fn, list_kwargs, **options)
        self._reflectors.append(reflector)
        return reflector

    def add_listener(self, listener: Callable[[CacheEvent], None]) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        """Start the ingestion thread and every reflector."""
        self._ingestion_thread = threading.Thread(
            target=self._run_ingestion,
            name="cache-ingestion",
            daemon=True,
        )
        self._ingestion_thread.start()
        for reflector in self._reflectors:
            reflector.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        for reflector in self._reflectors:
            reflector.stop()
        self._inbox.put(_STOP)
        if self._ingestion_thread is not None:
            self._ingestion_thread.join(timeout)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def wait_stopping(self, timeout: float) -> bool:
        return self._stop_event.wait(timeout)

    # Health

    @property
    def has_synced(self) -> bool:
        """True once every registered kind has completed an initial list."""
        with self._lock:
            return all(r.kind in self._synced for r in self._reflectors)

    @property
    def degraded(self) -> bool:
        with self._lock:
            return bool(self._degraded)

    @property
    def reliable(self) -> bool:
        """Reads are trustworthy: synced and no kind is degraded."""
        return self.has_synced and not self.degraded and self.fatal_error is None

    def wait_for_sync(self, timeout: Optional[float] = None) -> bool:
        return self._synced_event.wait(timeout)

    def wait_fatal(self, timeout: Optional[float] = None) -> bool:
        return self._fatal_event.wait(timeout)

    def mark_degraded(self, kind: Kind) -> None:
        with self._lock:
            if kind not in self._degraded:
                logger.warning(f"Cache degraded: {kind.value} watch is failing")
            self._degraded.add(kind)

    def mark_fatal(self, error: FatalError) -> None:
        logger.critical(f"Cache subscription failed permanently: {error}")
        with self._lock:
            self._degraded.update(Kind)
            if self.fatal_error is None:
                self.fatal_error = error
        self._fatal_event.set()

    # Ingestion

    def submit(self, message: Any) -> None:
        self._inbox.put(message)

    def _run_ingestion(self) -> None:
        logger.info("Starting cache ingestion")
        while True:
            message = self._inbox.get()
            if message is _STOP:
                break
            try:
                self.apply(message)
            except Exception:
                logger.exception(f"Failed to apply cache message {type(message).__name__}")
        logger.info("Cache ingestion stopped")

    def apply(self, message: Any) -> List[CacheEvent]:
        """
        Apply one reflector message and notify listeners.

        Returns:
            The change notifications that were delivered
        """
        if isinstance(message, ReplaceMessage):
            events = self._replace(message.kind, message.items)
        elif isinstance(message, WatchMessage):
            events = self._apply_event(message.kind, message.type, message.obj)
        else:
            raise TypeError(f"unknown cache message {message!r}")

        for event in events:
            for listener in self._listeners:
                try:
                    listener(event)
                except Exception:
                    logger.exception(f"Cache listener failed for {event.kind.value} {event.type}")
        return events

    def _replace(self, kind: Kind, items: List[Any]) -> List[CacheEvent]:
        fresh: Dict[str, Any] = {}
        for obj in items:
            try:
                record = _parse(kind, obj)
            except MalformedObjectError as e:
                logger.warning(f"Rejected malformed {kind.value}: {e}")
                continue
            fresh[_identity(kind, record)] = record

        events: List[CacheEvent] = []
        with self._lock:
            old_store = self._stores[kind]
            for identity, record in fresh.items():
                previous = old_store.get(identity)
                if previous is None:
                    events.append(CacheEvent(kind, "ADDED", None, record))
                elif previous.resource_version != record.resource_version:
                    events.append(CacheEvent(kind, "MODIFIED", previous, record))
            for identity, previous in old_store.items():
                if identity not in fresh:
                    # Missed delete, repaired by the relist.
                    events.append(CacheEvent(kind, "DELETED", previous, None))
            self._stores[kind] = fresh
            self._synced.add(kind)
            self._degraded.discard(kind)
            all_synced = all(r.kind in self._synced for r in self._reflectors)

        if all_synced and not self._synced_event.is_set():
            logger.info("Resource cache synced")
            self._synced_event.set()
        return events

    def _apply_event(self, kind: Kind, event_type: str, obj: Any) -> List[CacheEvent]:
        try:
            record = _parse(kind, obj)
        except MalformedObjectError as e:
            logger.warning(f"Rejected malformed {kind.value} {event_type} event: {e}")
            return []

        identity = _identity(kind, record)
        with self._lock:
            store = self._stores[kind]
            previous = store.get(identity)
            if event_type == "DELETED":
                if previous is None:
                    return []
                del store[identity]
                return [CacheEvent(kind, "DELETED", previous, None)]
            if previous is not None and previous.resource_version == record.resource_version:
                return []
            store[identity] = record

        return [CacheEvent(kind, "MODIFIED" if previous else "ADDED", previous, record)]

    # Reads

    def get_policy(self, key: str) -> Optional[AnyPolicy]:
        with self._lock:
            return self._stores[Kind.POLICY].get(key)

    def list_policies(self) -> List[AnyPolicy]:
        with self._lock:
            return sorted(self._stores[Kind.POLICY].values(), key=lambda p: p.key)

    def policy_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._stores[Kind.POLICY])

    def list_pods(self, namespace: Optional[str] = None,
                  selector: Optional[Dict[str, Any]] = None) -> List[PodInfo]:
        """
        List cached pods, optionally filtered.

        Args:
            namespace: Only pods in this namespace
            selector: Only pods matching this LabelSelector
        """
        with self._lock:
            pods = list(self._stores[Kind.POD].values())
        if namespace is not None:
            pods = [pod for pod in pods if pod.namespace == namespace]
        if selector is not None:
            pods = [pod for pod in pods if labels_match_selector(pod.labels, selector)]
        return sorted(pods, key=lambda pod: pod.key)

    def get_pod(self, namespace: str, name: str) -> Optional[PodInfo]:
        with self._lock:
            return self._stores[Kind.POD].get(make_key(namespace, name))

    def list_nodes(self) -> List[NodeInfo]:
        with self._lock:
            return sorted(self._stores[Kind.NODE].values(), key=lambda node: node.name)

    def get_node(self, name: str) -> Optional[NodeInfo]:
        with self._lock:
            return self._stores[Kind.NODE].get(name)
