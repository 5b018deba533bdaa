"""Cluster-wide named locks keyed by certificate identity.

Shared gateways and mirrored secrets can be touched by the reconciliation of
any intent referencing the same credential; every read-modify-write of such an
object happens while holding the lock for its identity.
"""
import logging
import threading
import time
from abc import ABCMeta, abstractmethod
from contextlib import ExitStack, contextmanager
from datetime import datetime, timedelta, timezone
from typing import Final, Iterator, Optional

import kubernetes
from kubernetes.client import ApiException

from .config import LockBackend, Settings
from .errors import LockProviderError, LockUnavailableError

log: Final = logging.getLogger(__name__)

LEASE_PREFIX: Final = "cert-lock-"
LOCK_LABEL: Final = "istio-ingress-sidekick.io/lock"


class LockProvider(metaclass=ABCMeta):
    def __init__(self, *, timeout: float = 10.0, retry_interval: float = 0.5) -> None:
        self.timeout = timeout
        self.retry_interval = retry_interval

    @abstractmethod
    def try_acquire(self, key: str, holder: str) -> bool:
        ...

    @abstractmethod
    def release(self, key: str, holder: str) -> None:
        ...

    @contextmanager
    def acquire(self, key: str, holder: str) -> Iterator[None]:
        deadline: Final = time.monotonic() + self.timeout
        while not self.try_acquire(key, holder):
            if time.monotonic() >= deadline:
                raise LockUnavailableError(key)
            time.sleep(self.retry_interval)

        log.debug("Acquired lock %s for %s", key, holder)
        try:
            yield
        finally:
            self.release(key, holder)
            log.debug("Released lock %s for %s", key, holder)


class LocalLockProvider(LockProvider):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._guard = threading.Lock()
        self._holders: dict[str, str] = {}

    def try_acquire(self, key: str, holder: str) -> bool:
        with self._guard:
            if key in self._holders:
                return False
            self._holders[key] = holder
            return True

    def release(self, key: str, holder: str) -> None:
        with self._guard:
            if self._holders.get(key) == holder:
                del self._holders[key]

    def holder(self, key: str) -> Optional[str]:
        return self._holders.get(key)


def _micro_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class LeaseLockProvider(LockProvider):
    def __init__(self, namespace: str, *, lease_seconds: int = 30, **kwargs) -> None:
        super().__init__(**kwargs)
        self.namespace = namespace
        self.lease_seconds = lease_seconds
        self.api: Final = kubernetes.client.CoordinationV1Api()

    def _body(self, name: str, holder: str, resource_version: Optional[str] = None) -> dict:
        now: Final = _micro_time(datetime.now(timezone.utc))
        metadata: dict = {"name": name, "namespace": self.namespace, "labels": {LOCK_LABEL: "true"}}
        if resource_version:
            metadata["resourceVersion"] = resource_version
        return {
            "apiVersion": "coordination.k8s.io/v1",
            "kind": "Lease",
            "metadata": metadata,
            "spec": {
                "holderIdentity": holder,
                "leaseDurationSeconds": self.lease_seconds,
                "acquireTime": now,
                "renewTime": now,
            },
        }

    @staticmethod
    def _expired(lease) -> bool:
        spec = lease.spec
        if spec is None or spec.renew_time is None or not spec.holder_identity:
            return True
        duration = timedelta(seconds=spec.lease_duration_seconds or 0)
        return spec.renew_time + duration < datetime.now(timezone.utc)

    def try_acquire(self, key: str, holder: str) -> bool:
        name: Final = f"{LEASE_PREFIX}{key}"
        try:
            self.api.create_namespaced_lease(self.namespace, self._body(name, holder))
            return True
        except ApiException as e:
            if e.status != 409:
                raise LockProviderError(f"unable to create lease {self.namespace}/{name}: {e.reason}") from e

        try:
            lease = self.api.read_namespaced_lease(name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                # released between our create and read
                return False
            raise LockProviderError(f"unable to read lease {self.namespace}/{name}: {e.reason}") from e

        if lease.spec.holder_identity != holder and not self._expired(lease):
            log.debug("Lock %s is held by %s", key, lease.spec.holder_identity)
            return False

        log.info("Taking over lease %s from %s", name, lease.spec.holder_identity)
        try:
            self.api.replace_namespaced_lease(
                name, self.namespace, self._body(name, holder, lease.metadata.resource_version)
            )
        except ApiException as e:
            if e.status in (404, 409):
                return False
            raise LockProviderError(f"unable to replace lease {self.namespace}/{name}: {e.reason}") from e
        return True

    def release(self, key: str, holder: str) -> None:
        name: Final = f"{LEASE_PREFIX}{key}"
        try:
            lease = self.api.read_namespaced_lease(name, self.namespace)
            if lease.spec.holder_identity != holder:
                log.warning("Lease %s is held by %s, not releasing", name, lease.spec.holder_identity)
                return
            self.api.delete_namespaced_lease(
                name,
                self.namespace,
                body=kubernetes.client.V1DeleteOptions(
                    preconditions=kubernetes.client.V1Preconditions(
                        resource_version=lease.metadata.resource_version
                    )
                ),
            )
        except ApiException as e:
            if e.status in (404, 409):
                return
            raise LockProviderError(f"unable to release lease {self.namespace}/{name}: {e.reason}") from e


class HeldLocks:
    """The locks taken during one reconciliation; each key is acquired at most once."""

    def __init__(self, provider: LockProvider, holder: str) -> None:
        self.provider = provider
        self.holder = holder
        self._stack = ExitStack()
        self._keys: set[str] = set()

    def __enter__(self) -> "HeldLocks":
        return self

    def __exit__(self, *exc_info) -> None:
        self._keys.clear()
        self._stack.close()

    def acquire(self, *keys: str) -> None:
        for key in sorted(set(keys) - self._keys):
            self._stack.enter_context(self.provider.acquire(key, self.holder))
            self._keys.add(key)

    def __contains__(self, key: str) -> bool:
        return key in self._keys


def create_lock_provider(settings: Settings) -> LockProvider:
    if settings.LOCK_BACKEND is LockBackend.local:
        return LocalLockProvider(timeout=settings.LOCK_TIMEOUT, retry_interval=settings.LOCK_RETRY_INTERVAL)
    return LeaseLockProvider(
        settings.GATEWAY_NAMESPACE,
        lease_seconds=settings.LOCK_LEASE_SECONDS,
        timeout=settings.LOCK_TIMEOUT,
        retry_interval=settings.LOCK_RETRY_INTERVAL,
    )
