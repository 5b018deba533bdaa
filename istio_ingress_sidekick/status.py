import logging
from abc import ABCMeta, abstractmethod
from datetime import datetime, timezone
from typing import Final, Iterable, Optional, Sequence

import kubernetes
import urllib3
from kubernetes.client import ApiException

from .config import GatewayConfig, Settings
from .errors import ProbeError
from .k8s import label_selector
from .models import (
    Condition,
    ConditionStatus,
    Ingress,
    LoadBalancerIngressStatus,
    LoadBalancerStatus,
)

log: Final = logging.getLogger(__name__)

READY: Final = "Ready"
NETWORK_CONFIGURED: Final = "NetworkConfigured"
LOAD_BALANCER_READY: Final = "LoadBalancerReady"
DEPENDENT_CONDITIONS: Final = (NETWORK_CONFIGURED, LOAD_BALANCER_READY)

RECONCILE_INGRESS_FAILED: Final = "ReconcileIngressFailed"
RECONCILE_VIRTUAL_SERVICE_FAILED: Final = "ReconcileVirtualServiceFailed"
NOT_OWNED: Final = "NotOwned"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def get_condition(ing: Ingress, type_: str) -> Optional[Condition]:
    return next((c for c in ing.status.conditions if c.type == type_), None)


def _set_condition(
    ing: Ingress, type_: str, status: ConditionStatus, reason: Optional[str] = None, message: Optional[str] = None
) -> None:
    current: Final = get_condition(ing, type_)
    if current is not None and (current.status, current.reason, current.message) == (status, reason, message):
        return

    condition: Final = Condition(
        type=type_,
        status=status,
        reason=reason,
        message=message,
        last_transition_time=current.last_transition_time
        if current is not None and current.status is status
        else _now(),
    )
    ing.status.conditions = sorted(
        [c for c in ing.status.conditions if c.type != type_] + [condition], key=lambda c: c.type
    )


def _recompute_ready(ing: Ingress) -> None:
    dependents: Final = [get_condition(ing, type_) for type_ in DEPENDENT_CONDITIONS]
    for condition in dependents:
        if condition is not None and condition.status is ConditionStatus.false:
            _set_condition(ing, READY, ConditionStatus.false, condition.reason, condition.message)
            return
    if all(condition is not None and condition.status is ConditionStatus.true for condition in dependents):
        _set_condition(ing, READY, ConditionStatus.true)
        return
    unknown = next((c for c in dependents if c is not None and c.reason), None)
    _set_condition(
        ing, READY, ConditionStatus.unknown, unknown.reason if unknown else None, unknown.message if unknown else None
    )


def initialize_conditions(ing: Ingress) -> None:
    for type_ in (READY, *DEPENDENT_CONDITIONS):
        if get_condition(ing, type_) is None:
            _set_condition(ing, type_, ConditionStatus.unknown)


def mark_network_configured(ing: Ingress) -> None:
    _set_condition(ing, NETWORK_CONFIGURED, ConditionStatus.true)
    _recompute_ready(ing)


def mark_load_balancer_ready(ing: Ingress, public: LoadBalancerStatus, private: LoadBalancerStatus) -> None:
    ing.status.public_load_balancer = public
    ing.status.private_load_balancer = private
    _set_condition(ing, LOAD_BALANCER_READY, ConditionStatus.true)
    _recompute_ready(ing)


def mark_load_balancer_not_ready(ing: Ingress) -> None:
    _set_condition(
        ing, LOAD_BALANCER_READY, ConditionStatus.unknown, "Uninitialized", "Waiting for load balancer to be ready"
    )
    _recompute_ready(ing)


def mark_load_balancer_failed(ing: Ingress, reason: str, message: str) -> None:
    _set_condition(ing, LOAD_BALANCER_READY, ConditionStatus.false, reason, message)
    _recompute_ready(ing)


def mark_ingress_not_ready(ing: Ingress, reason: str, message: str) -> None:
    _set_condition(ing, READY, ConditionStatus.false, reason, message)


def lb_status(gateways: Iterable[GatewayConfig]) -> LoadBalancerStatus:
    return LoadBalancerStatus(
        ingress=[
            LoadBalancerIngressStatus(domain_internal=gateway.service_url)
            if gateway.service_url
            else LoadBalancerIngressStatus(mesh_only=True)
            for gateway in gateways
        ]
    )


class ReadinessProbe(metaclass=ABCMeta):
    @abstractmethod
    def is_ready(self, ing: Ingress) -> bool:
        """Whether the data plane serves the routes of the ingress; raises ProbeError when it cannot tell."""


class GatewayPodsProbe(ReadinessProbe):
    """Considers an ingress ready once every gateway deployment serving it has all replicas available."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.api: Final = kubernetes.client.AppsV1Api()

    def _gateways(self, ing: Ingress) -> Sequence[GatewayConfig]:
        if ing.is_public():
            return [*self.settings.INGRESS_GATEWAYS, *self.settings.LOCAL_GATEWAYS]
        return self.settings.LOCAL_GATEWAYS

    def is_ready(self, ing: Ingress) -> bool:
        selectors: Final = sorted({label_selector(gateway.selector) or "" for gateway in self._gateways(ing)})
        for selector in selectors:
            try:
                deployments = self.api.list_namespaced_deployment(
                    self.settings.GATEWAY_NAMESPACE, label_selector=selector
                ).items
            except (ApiException, urllib3.exceptions.HTTPError) as e:
                raise ProbeError(f"unable to list gateway deployments for {selector}: {e}") from e

            if not deployments:
                log.info("%s: no gateway deployment matches %s", ing.key, selector)
                return False
            for deployment in deployments:
                desired = deployment.spec.replicas or 0
                available = deployment.status.available_replicas or 0
                if available < desired:
                    log.info(
                        "%s: %s has %d/%d replicas available",
                        ing.key,
                        deployment.metadata.name,
                        available,
                        desired,
                    )
                    return False
        return True
