import logging
from typing import Any, Final, Generic, Iterable, Mapping, NamedTuple, Sequence, Type, TypeVar

from .errors import AlreadyExistsError, NotFoundError, NotOwnedError
from .k8s import Store
from .models import MANAGED_LABEL, KubernetesResource

log: Final = logging.getLogger(__name__)

R = TypeVar("R", bound=KubernetesResource)


class ConvergeResult(NamedTuple, Generic[R]):
    created: list[R]
    updated: list[R]
    deleted: list[R]

    @property
    def writes(self) -> int:
        return len(self.created) + len(self.updated) + len(self.deleted)


def _normalize(value: Any) -> Any:
    # zero values and absent fields compare equal, as in the proto wire format
    if isinstance(value, dict):
        normalized = {key: _normalize(item) for key, item in value.items()}
        return {key: item for key, item in normalized.items() if item not in (None, "", [], {}, False, 0)}
    if isinstance(value, list):
        return [_normalize(item) for item in value]
    return value


def comparable(resource: KubernetesResource) -> dict[str, Any]:
    body: Final = resource.body()
    metadata: Final = body.pop("metadata", {})
    for key in ("apiVersion", "kind", "status"):
        body.pop(key, None)
    body["labels"] = metadata.get("labels")
    body["annotations"] = metadata.get("annotations")
    body["ownerReferences"] = metadata.get("ownerReferences")
    return _normalize(body)


def semantic_equal(a: KubernetesResource, b: KubernetesResource) -> bool:
    return comparable(a) == comparable(b)


def _with_version(desired: R, existing: R) -> R:
    updated: Final = desired.model_copy(deep=True)
    updated.metadata.resource_version = existing.metadata.resource_version
    return updated


def is_managed(resource: KubernetesResource) -> bool:
    return resource.labels.get(MANAGED_LABEL) == "true"


def apply(store: Store, desired: R) -> R:
    """Creates or updates an object shared by certificate identity rather than owned by one ingress."""
    model: Final = type(desired)
    try:
        existing = store.get(model, desired.namespace, desired.name)
    except NotFoundError:
        try:
            return store.create(desired)
        except AlreadyExistsError:
            log.debug("%s appeared concurrently", desired)
            existing = store.get(model, desired.namespace, desired.name)

    if not is_managed(existing):
        raise NotOwnedError(model.KIND, [desired.name])
    if semantic_equal(existing, desired):
        log.debug("Nothing to do for %s", desired)
        return existing
    return store.update(_with_version(desired, existing))


def prune(
    store: Store,
    owner: KubernetesResource,
    model: Type[R],
    namespace: str,
    selector: Mapping[str, str],
    keep: Iterable[str],
) -> list[R]:
    """Deletes objects matching the selector that the owner controls and that are not kept, in name order."""
    kept: Final = frozenset(keep)
    deleted: list[R] = []
    for current in sorted(store.list(model, namespace, selector), key=lambda item: item.name):
        if current.name in kept:
            continue
        if not current.is_controlled_by(owner):
            log.debug("Leaving %s, it is not controlled by %s", current, owner)
            continue
        try:
            store.delete(model, namespace, current.name)
        except NotFoundError:
            log.debug("%s is already gone", current)
        deleted.append(current)
    return deleted


def converge(
    store: Store,
    owner: KubernetesResource,
    model: Type[R],
    namespace: str,
    selector: Mapping[str, str],
    desired: Sequence[R],
    *,
    prune_extra: bool = True,
) -> ConvergeResult[R]:
    existing: Final = {item.name: item for item in store.list(model, namespace, selector)}
    result: Final[ConvergeResult[R]] = ConvergeResult([], [], [])
    not_owned: list[str] = []

    for wanted in desired:
        current = existing.get(wanted.name)
        if current is None:
            # the name may be taken by an object outside the selector
            try:
                current = store.get(model, namespace, wanted.name)
            except NotFoundError:
                try:
                    result.created.append(store.create(wanted))
                    continue
                except AlreadyExistsError:
                    current = store.get(model, namespace, wanted.name)

        if not current.is_controlled_by(owner):
            log.warning("%s exists and is not controlled by %s", current, owner)
            not_owned.append(wanted.name)
            continue
        if not semantic_equal(current, wanted):
            result.updated.append(store.update(_with_version(wanted, current)))

    if prune_extra:
        result.deleted.extend(prune(store, owner, model, namespace, selector, (item.name for item in desired)))

    if not_owned:
        raise NotOwnedError(model.KIND, not_owned)
    return result
