from typing import Final, Iterator

from .models import (
    INGRESS_LABEL,
    MANAGED_LABEL,
    ClientTLSSettings,
    ConnectionPoolSettings,
    DestinationRule,
    DestinationRuleSpec,
    HTTPSettings,
    Ingress,
    IngressBackendSplit,
    KubernetesResourceMetadata,
    Service,
    TrafficPolicy,
)
from .virtual_services import service_hostname

HTTP2_PORT_NAMES: Final = frozenset({"http2", "h2c"})


def data_plane_user_san(namespace: str) -> str:
    return f"kn-user-{namespace}"


def backend_splits(ing: Ingress) -> Iterator[tuple[str, IngressBackendSplit]]:
    """Yields (hostname, split) once per unique backend hostname.

    Paths rewriting the host point at the cluster-local gateway, which does not
    terminate internal TLS, so they are skipped.
    """
    seen: set[str] = set()
    for rule in ing.spec.rules:
        for path in rule.http.paths:
            if path.rewrite_host:
                continue
            for split in path.splits:
                hostname = service_hostname(split.service_name, split.service_namespace)
                if hostname not in seen:
                    seen.add(hostname)
                    yield hostname, split


def is_http2(service: Service) -> bool:
    return any(port.name in HTTP2_PORT_NAMES for port in service.spec.ports)


def make_internal_encryption_destination_rule(hostname: str, ing: Ingress, http2: bool) -> DestinationRule:
    policy: Final = TrafficPolicy(
        tls=ClientTLSSettings(mode="SIMPLE", subject_alt_names=[data_plane_user_san(ing.namespace)])
    )
    if http2:
        policy.connection_pool = ConnectionPoolSettings(http=HTTPSettings(h2_upgrade_policy="UPGRADE"))

    return DestinationRule(
        metadata=KubernetesResourceMetadata(
            name=hostname,
            namespace=ing.namespace,
            labels={MANAGED_LABEL: "true", INGRESS_LABEL: ing.name},
            owner_references=[ing.owner_reference()],
        ),
        spec=DestinationRuleSpec(host=hostname, traffic_policy=policy),
    )
