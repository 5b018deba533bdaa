import base64
import copy
import itertools
import threading
import uuid
from typing import Callable, Optional

import pytest

from istio_ingress_sidekick.config import GatewayConfig, LockBackend, Settings
from istio_ingress_sidekick.errors import AlreadyExistsError, ConflictError, NotFoundError
from istio_ingress_sidekick.lock import LocalLockProvider
from istio_ingress_sidekick.models import (
    Gateway,
    GatewaySpec,
    HTTPIngressPath,
    HTTPIngressRuleValue,
    HTTPOption,
    Ingress,
    IngressBackendSplit,
    IngressRule,
    IngressSpec,
    IngressTLS,
    KubernetesResourceMetadata,
    OwnerReference,
    Secret,
    Visibility,
)
from istio_ingress_sidekick.reconciler import IngressReconciler
from istio_ingress_sidekick.status import ReadinessProbe


class FakeStore:
    """In-memory stand-in for k8s.Store with the API server's optimistic concurrency."""

    def __init__(self) -> None:
        self.dry_run = False
        self.writes: list[tuple[str, str]] = []
        self._guard = threading.RLock()
        self._objects: dict[tuple[str, str, str], dict] = {}
        self._versions = itertools.count(1)

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _store(self, verb, resource, body) -> None:
        self._objects[(resource.KIND, resource.namespace, resource.name)] = body
        self.writes.append((verb, str(resource)))

    def seed(self, resource):
        """Stores the resource as if created by someone else, without recording a write."""
        with self._guard:
            body = resource.body()
            body["metadata"].setdefault("uid", str(uuid.uuid4()))
            body["metadata"]["resourceVersion"] = self._next_version()
            body["metadata"].setdefault("generation", 1)
            self._objects[(resource.KIND, resource.namespace, resource.name)] = body
            return type(resource).model_validate(copy.deepcopy(body))

    def get(self, model, namespace, name):
        with self._guard:
            body = self._objects.get((model.KIND, namespace, name))
            if body is None:
                raise NotFoundError(f"{model.KIND} {namespace}/{name} not found")
            return model.model_validate(copy.deepcopy(body))

    def list(self, model, namespace=None, labels=None):
        with self._guard:
            found = []
            for (kind, ns, _), body in sorted(self._objects.items()):
                if kind != model.KIND or (namespace and ns != namespace):
                    continue
                object_labels = body["metadata"].get("labels") or {}
                if all(object_labels.get(key) == value for key, value in (labels or {}).items()):
                    found.append(model.model_validate(copy.deepcopy(body)))
            return found

    def create(self, resource):
        with self._guard:
            key = (resource.KIND, resource.namespace, resource.name)
            if key in self._objects:
                raise AlreadyExistsError(f"{resource} already exists")
            body = resource.body()
            body["metadata"]["uid"] = str(uuid.uuid4())
            body["metadata"]["resourceVersion"] = self._next_version()
            body["metadata"]["generation"] = 1
            self._store("create", resource, body)
            return type(resource).model_validate(copy.deepcopy(body))

    def update(self, resource):
        with self._guard:
            existing = self._objects.get((resource.KIND, resource.namespace, resource.name))
            if existing is None:
                raise NotFoundError(f"{resource} not found")
            if resource.metadata.resource_version != existing["metadata"]["resourceVersion"]:
                raise ConflictError(f"{resource} was modified concurrently")
            body = resource.body()
            body["metadata"]["uid"] = existing["metadata"]["uid"]
            body["metadata"]["resourceVersion"] = self._next_version()
            generation = existing["metadata"].get("generation", 1)
            if body.get("spec") != existing.get("spec"):
                generation += 1
            body["metadata"]["generation"] = generation
            if "status" in existing:
                body["status"] = existing["status"]
            self._store("update", resource, body)
            return type(resource).model_validate(copy.deepcopy(body))

    def update_status(self, resource):
        with self._guard:
            existing = self._objects.get((resource.KIND, resource.namespace, resource.name))
            if existing is None:
                raise NotFoundError(f"{resource} not found")
            if resource.metadata.resource_version != existing["metadata"]["resourceVersion"]:
                raise ConflictError(f"{resource} was modified concurrently")
            body = copy.deepcopy(existing)
            body["status"] = resource.body().get("status")
            body["metadata"]["resourceVersion"] = self._next_version()
            self._store("update_status", resource, body)
            return type(resource).model_validate(copy.deepcopy(body))

    def delete(self, model, namespace, name, *, resource_version=None):
        with self._guard:
            key = (model.KIND, namespace, name)
            existing = self._objects.get(key)
            if existing is None:
                raise NotFoundError(f"{model.KIND} {namespace}/{name} not found")
            if resource_version and resource_version != existing["metadata"]["resourceVersion"]:
                raise ConflictError(f"{model.KIND} {namespace}/{name} was modified concurrently")
            del self._objects[key]
            self.writes.append(("delete", f"{model.KIND} {namespace}/{name}"))

    def names(self, model, namespace=None):
        return sorted(item.name for item in self.list(model, namespace))


class FakeProbe(ReadinessProbe):
    def __init__(self, ready: bool = True) -> None:
        self.ready = ready
        self.calls = 0

    def is_ready(self, ing):
        self.calls += 1
        return self.ready


def pem(label: str, seed: str, lines: int = 3) -> bytes:
    body = [base64.b64encode(f"{seed}-{label}-{index}".encode() * 3).decode() for index in range(lines)]
    return ("\n".join([f"-----BEGIN {label}-----", *body, f"-----END {label}-----"]) + "\n").encode()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        LOCK_BACKEND=LockBackend.local,
        POD_NAME="sidekick-0",
        LOCK_TIMEOUT=2.0,
        LOCK_RETRY_INTERVAL=0.01,
        INGRESS_GATEWAYS=[
            GatewayConfig(
                namespace="knative-serving",
                name="knative-ingress-gateway",
                service_url="istio-ingressgateway.istio-system.svc.cluster.local",
            )
        ],
        LOCAL_GATEWAYS=[
            GatewayConfig(
                namespace="knative-serving",
                name="knative-local-gateway",
                service_url="knative-local-gateway.istio-system.svc.cluster.local",
            )
        ],
    )


@pytest.fixture
def store(settings) -> FakeStore:
    store = FakeStore()
    for config in [*settings.INGRESS_GATEWAYS, *settings.LOCAL_GATEWAYS]:
        store.seed(
            Gateway(
                metadata=KubernetesResourceMetadata(name=config.name, namespace=config.namespace),
                spec=GatewaySpec(selector=dict(config.selector)),
            )
        )
    return store


@pytest.fixture
def lock_provider() -> LocalLockProvider:
    return LocalLockProvider(timeout=2.0, retry_interval=0.01)


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def reconciler(store, lock_provider, probe, settings) -> IngressReconciler:
    return IngressReconciler(store, lock_provider, probe, settings)


@pytest.fixture
def tls_secret(store) -> Callable[..., Secret]:
    def make(name: str, seed: Optional[str] = None, namespace: str = "default") -> Secret:
        seed = seed or name
        return store.seed(
            Secret(
                metadata=KubernetesResourceMetadata(name=name, namespace=namespace),
                type="kubernetes.io/tls",
                data={
                    "tls.crt": base64.b64encode(pem("CERTIFICATE", seed)).decode(),
                    "tls.key": base64.b64encode(pem("PRIVATE KEY", seed)).decode(),
                },
            )
        )

    return make


def make_ingress(
    name: str,
    namespace: str = "default",
    hosts: Optional[list[str]] = None,
    tls: Optional[list[IngressTLS]] = None,
    visibility: Visibility = Visibility.public,
    http_option: HTTPOption = HTTPOption.enabled,
    owner_kind: Optional[str] = None,
    service: str = "hello",
) -> Ingress:
    owner_references = None
    if owner_kind:
        owner_references = [
            OwnerReference(
                api_version="serving.knative.dev/v1beta1",
                kind=owner_kind,
                name=name,
                uid=str(uuid.uuid4()),
                controller=True,
            )
        ]
    return Ingress(
        metadata=KubernetesResourceMetadata(
            name=name,
            namespace=namespace,
            owner_references=owner_references,
        ),
        spec=IngressSpec(
            rules=[
                IngressRule(
                    hosts=hosts or [f"{name}.example.com"],
                    visibility=visibility,
                    http=HTTPIngressRuleValue(
                        paths=[
                            HTTPIngressPath(
                                splits=[
                                    IngressBackendSplit(
                                        service_name=service,
                                        service_namespace=namespace,
                                        service_port=80,
                                    )
                                ]
                            )
                        ]
                    ),
                )
            ],
            tls=tls or [],
            http_option=http_option,
        ),
    )


@pytest.fixture
def ingress(store) -> Callable[..., Ingress]:
    def make(name: str, **kwargs) -> Ingress:
        return store.seed(make_ingress(name, **kwargs))

    return make
