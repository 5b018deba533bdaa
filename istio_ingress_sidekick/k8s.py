import json
import logging
from contextlib import contextmanager
from typing import Any, Final, Iterator, Mapping, Optional, Type, TypeVar

import kubernetes
import urllib3
from kubernetes.client import ApiException

from .errors import AlreadyExistsError, ConflictError, NotFoundError, TransientError
from .models import KubernetesResource, Secret, Service

log: Final = logging.getLogger(__name__)

R = TypeVar("R", bound=KubernetesResource)

CORE_KINDS: Final = {Secret.KIND: "secret", Service.KIND: "service"}


def label_selector(labels: Optional[Mapping[str, str]]) -> Optional[str]:
    if not labels:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def _api_reason(e: ApiException) -> Optional[str]:
    try:
        return json.loads(e.body or "{}").get("reason")
    except (TypeError, ValueError):
        return None


@contextmanager
def translate_errors(what: str) -> Iterator[None]:
    try:
        yield
    except ApiException as e:
        if e.status == 404:
            raise NotFoundError(f"{what} not found") from e
        if e.status == 409:
            if _api_reason(e) == "AlreadyExists":
                raise AlreadyExistsError(f"{what} already exists") from e
            raise ConflictError(f"{what} was modified concurrently") from e
        if e.status == 429 or (e.status or 0) >= 500:
            raise TransientError(f"{what}: {e.status} {e.reason}") from e
        raise
    except urllib3.exceptions.HTTPError as e:
        raise TransientError(f"{what}: {e}") from e


class Store:
    _initialized = False

    def __init__(self, *, dry_run: bool = False) -> None:
        assert self._initialized, "You need to initialize the class by calling Store.initialize() first"

        self.dry_run = dry_run
        self.api_client: Final = kubernetes.client.ApiClient()
        self.custom: Final = kubernetes.client.CustomObjectsApi(self.api_client)
        self.core: Final = kubernetes.client.CoreV1Api(self.api_client)

    @classmethod
    def initialize(cls) -> None:
        try:
            kubernetes.config.load_incluster_config()
        except kubernetes.config.config_exception.ConfigException as e:
            log.warning("Unable to use incluster config; falling back to kube config: %s", e)
            kubernetes.config.load_kube_config()

        cls._initialized = True

    @property
    def _dry_run(self) -> Optional[str]:
        return "All" if self.dry_run else None

    def _core(self, verb: str, model: Type[KubernetesResource], scope: str = "namespaced") -> Any:
        kind = CORE_KINDS[model.KIND]
        if scope == "all":
            return getattr(self.core, f"{verb}_{kind}_for_all_namespaces")
        return getattr(self.core, f"{verb}_namespaced_{kind}")

    def _parse(self, model: Type[R], raw: Any) -> R:
        if not isinstance(raw, dict):
            raw = self.api_client.sanitize_for_serialization(raw)
        return model.model_validate(raw)

    def get(self, model: Type[R], namespace: str, name: str) -> R:
        with translate_errors(f"{model.KIND} {namespace}/{name}"):
            if model.KIND in CORE_KINDS:
                raw = self._core("read", model)(name, namespace)
            else:
                raw = self.custom.get_namespaced_custom_object(
                    model.GROUP, model.VERSION, namespace, model.PLURAL, name
                )
        return self._parse(model, raw)

    def list(
        self,
        model: Type[R],
        namespace: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
    ) -> list[R]:
        selector: Final = label_selector(labels)
        with translate_errors(f"{model.KIND} list in {namespace or 'all namespaces'}"):
            if model.KIND in CORE_KINDS:
                if namespace:
                    result = self._core("list", model)(namespace, label_selector=selector)
                else:
                    result = self._core("list", model, "all")(label_selector=selector)
                items = result.items
            elif namespace:
                items = self.custom.list_namespaced_custom_object(
                    model.GROUP, model.VERSION, namespace, model.PLURAL, label_selector=selector
                )["items"]
            else:
                items = self.custom.list_cluster_custom_object(
                    model.GROUP, model.VERSION, model.PLURAL, label_selector=selector
                )["items"]
        return [self._parse(model, item) for item in items]

    def create(self, resource: R) -> R:
        model: Final = type(resource)
        log.info("Creating %s", resource)
        with translate_errors(str(resource)):
            if model.KIND in CORE_KINDS:
                raw = self._core("create", model)(resource.namespace, resource.body(), dry_run=self._dry_run)
            else:
                raw = self.custom.create_namespaced_custom_object(
                    model.GROUP,
                    model.VERSION,
                    resource.namespace,
                    model.PLURAL,
                    resource.body(),
                    dry_run=self._dry_run,
                )
        return self._parse(model, raw)

    def update(self, resource: R) -> R:
        """Replaces the object; metadata.resourceVersion must carry the last observed version."""
        model: Final = type(resource)
        if not resource.metadata.resource_version:
            raise ValueError(f"{resource} has no resourceVersion")
        log.info("Updating %s", resource)
        with translate_errors(str(resource)):
            if model.KIND in CORE_KINDS:
                raw = self._core("replace", model)(
                    resource.name, resource.namespace, resource.body(), dry_run=self._dry_run
                )
            else:
                raw = self.custom.replace_namespaced_custom_object(
                    model.GROUP,
                    model.VERSION,
                    resource.namespace,
                    model.PLURAL,
                    resource.name,
                    resource.body(),
                    dry_run=self._dry_run,
                )
        return self._parse(model, raw)

    def update_status(self, resource: R) -> R:
        model: Final = type(resource)
        log.info("Updating status of %s", resource)
        with translate_errors(str(resource)):
            raw = self.custom.replace_namespaced_custom_object_status(
                model.GROUP,
                model.VERSION,
                resource.namespace,
                model.PLURAL,
                resource.name,
                resource.body(),
                dry_run=self._dry_run,
            )
        return self._parse(model, raw)

    def delete(
        self,
        model: Type[KubernetesResource],
        namespace: str,
        name: str,
        *,
        resource_version: Optional[str] = None,
    ) -> None:
        log.info("Deleting %s %s/%s", model.KIND, namespace, name)
        body: Final = kubernetes.client.V1DeleteOptions(
            preconditions=kubernetes.client.V1Preconditions(resource_version=resource_version)
            if resource_version
            else None
        )
        with translate_errors(f"{model.KIND} {namespace}/{name}"):
            if model.KIND in CORE_KINDS:
                self._core("delete", model)(name, namespace, body=body, dry_run=self._dry_run)
            else:
                self.custom.delete_namespaced_custom_object(
                    model.GROUP,
                    model.VERSION,
                    namespace,
                    model.PLURAL,
                    name,
                    body=body,
                    dry_run=self._dry_run,
                )
