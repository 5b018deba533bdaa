import threading
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from kubernetes.client import ApiException

from istio_ingress_sidekick.config import LockBackend, Settings
from istio_ingress_sidekick.errors import LockProviderError, LockUnavailableError
from istio_ingress_sidekick.lock import (
    HeldLocks,
    LeaseLockProvider,
    LocalLockProvider,
    create_lock_provider,
)


class TestLocalLockProvider:
    def test_acquire_and_release(self):
        provider = LocalLockProvider(timeout=0.1, retry_interval=0.01)
        with provider.acquire("abc", "one"):
            assert provider.holder("abc") == "one"
        assert provider.holder("abc") is None

    def test_released_on_error(self):
        provider = LocalLockProvider(timeout=0.1, retry_interval=0.01)
        with pytest.raises(RuntimeError):
            with provider.acquire("abc", "one"):
                raise RuntimeError("boom")
        assert provider.holder("abc") is None

    def test_contention_times_out(self):
        provider = LocalLockProvider(timeout=0.05, retry_interval=0.01)
        with provider.acquire("abc", "one"):
            with pytest.raises(LockUnavailableError) as info:
                with provider.acquire("abc", "two"):
                    pass
        assert info.value.key == "abc"

    def test_waits_for_release(self):
        provider = LocalLockProvider(timeout=2.0, retry_interval=0.01)
        order = []

        def hold():
            with provider.acquire("abc", "one"):
                order.append("one")
                time.sleep(0.05)

        thread = threading.Thread(target=hold)
        thread.start()
        while not order:
            time.sleep(0.001)
        with provider.acquire("abc", "two"):
            order.append("two")
        thread.join()
        assert order == ["one", "two"]

    def test_release_by_other_holder_is_ignored(self):
        provider = LocalLockProvider()
        assert provider.try_acquire("abc", "one")
        provider.release("abc", "two")
        assert provider.holder("abc") == "one"


class TestHeldLocks:
    def test_each_key_acquired_once(self):
        provider = LocalLockProvider(timeout=0.05, retry_interval=0.01)
        with HeldLocks(provider, "one") as locks:
            locks.acquire("b", "a")
            locks.acquire("a")
            assert "a" in locks and "b" in locks
            assert provider.holder("a") == "one"
        assert provider.holder("a") is None
        assert provider.holder("b") is None

    def test_releases_on_error(self):
        provider = LocalLockProvider(timeout=0.05, retry_interval=0.01)
        with pytest.raises(LockUnavailableError):
            with HeldLocks(provider, "one") as locks:
                locks.acquire("a")
                assert provider.try_acquire("b", "two")
                locks.acquire("b")
        assert provider.holder("a") is None
        assert provider.holder("b") == "two"


def lease(holder, renewed, duration=30, resource_version="7"):
    return SimpleNamespace(
        metadata=SimpleNamespace(resource_version=resource_version),
        spec=SimpleNamespace(holder_identity=holder, renew_time=renewed, lease_duration_seconds=duration),
    )


@pytest.fixture
def coordination():
    with patch("istio_ingress_sidekick.lock.kubernetes.client.CoordinationV1Api") as api:
        yield api.return_value


class TestLeaseLockProvider:
    def test_create_acquires(self, coordination):
        provider = LeaseLockProvider("istio-system")
        assert provider.try_acquire("abc", "one")

        namespace, body = coordination.create_namespaced_lease.call_args.args
        assert namespace == "istio-system"
        assert body["metadata"]["name"] == "cert-lock-abc"
        assert body["spec"]["holderIdentity"] == "one"
        assert body["spec"]["leaseDurationSeconds"] == 30

    def test_held_lease_is_not_taken(self, coordination):
        coordination.create_namespaced_lease.side_effect = ApiException(status=409)
        coordination.read_namespaced_lease.return_value = lease("two", datetime.now(timezone.utc))

        assert not LeaseLockProvider("istio-system").try_acquire("abc", "one")
        coordination.replace_namespaced_lease.assert_not_called()

    def test_expired_lease_is_taken_over(self, coordination):
        coordination.create_namespaced_lease.side_effect = ApiException(status=409)
        coordination.read_namespaced_lease.return_value = lease(
            "two", datetime.now(timezone.utc) - timedelta(minutes=5)
        )

        assert LeaseLockProvider("istio-system").try_acquire("abc", "one")
        name, namespace, body = coordination.replace_namespaced_lease.call_args.args
        assert (name, namespace) == ("cert-lock-abc", "istio-system")
        assert body["metadata"]["resourceVersion"] == "7"
        assert body["spec"]["holderIdentity"] == "one"

    def test_lost_takeover_race(self, coordination):
        coordination.create_namespaced_lease.side_effect = ApiException(status=409)
        coordination.read_namespaced_lease.return_value = lease(
            "two", datetime.now(timezone.utc) - timedelta(minutes=5)
        )
        coordination.replace_namespaced_lease.side_effect = ApiException(status=409)

        assert not LeaseLockProvider("istio-system").try_acquire("abc", "one")

    def test_provider_failure(self, coordination):
        coordination.create_namespaced_lease.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(LockProviderError, match="Forbidden"):
            LeaseLockProvider("istio-system").try_acquire("abc", "one")

    def test_release_deletes_own_lease(self, coordination):
        coordination.read_namespaced_lease.return_value = lease("one", datetime.now(timezone.utc))

        LeaseLockProvider("istio-system").release("abc", "one")
        args, kwargs = coordination.delete_namespaced_lease.call_args
        assert args == ("cert-lock-abc", "istio-system")
        assert kwargs["body"].preconditions.resource_version == "7"

    def test_release_keeps_foreign_lease(self, coordination):
        coordination.read_namespaced_lease.return_value = lease("two", datetime.now(timezone.utc))

        LeaseLockProvider("istio-system").release("abc", "one")
        coordination.delete_namespaced_lease.assert_not_called()

    def test_release_of_missing_lease(self, coordination):
        coordination.read_namespaced_lease.side_effect = ApiException(status=404)
        LeaseLockProvider("istio-system").release("abc", "one")


def test_create_lock_provider(coordination):
    local = create_lock_provider(Settings(LOCK_BACKEND=LockBackend.local, LOCK_TIMEOUT=3.0))
    assert isinstance(local, LocalLockProvider)
    assert local.timeout == 3.0

    lease_provider = create_lock_provider(Settings(GATEWAY_NAMESPACE="gateways", LOCK_LEASE_SECONDS=15))
    assert isinstance(lease_provider, LeaseLockProvider)
    assert lease_provider.namespace == "gateways"
    assert lease_provider.lease_seconds == 15
