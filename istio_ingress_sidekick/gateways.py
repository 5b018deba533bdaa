import hashlib
import logging
import zlib
from enum import StrEnum, auto
from typing import Final, Iterable, Mapping, Optional, Sequence

from .config import GatewayConfig, Settings
from .errors import InvalidStateError
from .models import (
    CERTIFICATE_IDENTITY_LABEL,
    GATEWAY_KIND_LABEL,
    INGRESS_LABEL,
    INGRESSES_ANNOTATION,
    MANAGED_LABEL,
    Gateway,
    GatewaySpec,
    HTTPOption,
    Ingress,
    IngressTLS,
    KubernetesResourceMetadata,
    Port,
    Server,
    ServerTLSSettings,
)

log: Final = logging.getLogger(__name__)

HTTPS_PORT: Final = 443
HTTP_PORT: Final = 80
TLS_MODE_SIMPLE: Final = "SIMPLE"


class GatewayKind(StrEnum):
    # owned by a single ingress, lives in its namespace
    private = auto()
    # shared by every ingress referencing one wildcard credential
    wildcard = auto()
    # shared by every domain-alias ingress fronting one credential
    domain_alias = "domain-alias"


def server_port_prefix(ing: Ingress) -> str:
    return f"{ing.namespace}/{ing.name}:"


def make_tls_server(ing: Ingress, index: int, hosts: Iterable[str], identity: str) -> Server:
    return Server(
        hosts=sorted(set(hosts)),
        port=Port(number=HTTPS_PORT, name=f"{server_port_prefix(ing)}{index}", protocol="HTTPS"),
        tls=ServerTLSSettings(mode=TLS_MODE_SIMPLE, credential_name=identity),
    )


def make_http_server(ing: Ingress, hosts: Iterable[str]) -> Server:
    server: Final = Server(
        hosts=sorted(set(hosts)),
        port=Port(number=HTTP_PORT, name=f"{server_port_prefix(ing)}http", protocol="HTTP"),
    )
    if ing.spec.http_option is HTTPOption.redirected:
        server.tls = ServerTLSSettings(https_redirect=True)
    return server


def categorize_tls(tls: Sequence[IngressTLS]) -> tuple[list[IngressTLS], list[IngressTLS]]:
    """Splits TLS blocks into (exact host, wildcard host) blocks."""
    exact: list[IngressTLS] = []
    wildcard: list[IngressTLS] = []
    for block in tls:
        (wildcard if any(host.startswith("*.") for host in block.hosts) else exact).append(block)
    return exact, wildcard


def private_gateway_name(ing: Ingress, gateway: GatewayConfig) -> str:
    return f"{ing.name}-{zlib.adler32(gateway.qualified_name().encode())}"


def make_ingress_gateways(ing: Ingress, servers: Sequence[Server], settings: Settings) -> list[Gateway]:
    return [
        Gateway(
            metadata=KubernetesResourceMetadata(
                name=private_gateway_name(ing, gateway),
                namespace=ing.namespace,
                labels={
                    MANAGED_LABEL: "true",
                    INGRESS_LABEL: ing.name,
                    GATEWAY_KIND_LABEL: GatewayKind.private,
                },
                owner_references=[ing.owner_reference()],
            ),
            spec=GatewaySpec(
                selector=dict(gateway.selector),
                servers=[server.model_copy(deep=True) for server in servers],
            ),
        )
        for gateway in settings.INGRESS_GATEWAYS
    ]


def make_ingress_tls_gateways(
    ing: Ingress,
    tls: Sequence[IngressTLS],
    identities: Mapping[tuple[str, str], str],
    settings: Settings,
) -> list[Gateway]:
    if not tls:
        return []
    servers: Final = [
        make_tls_server(ing, index, block.hosts, identities[(block.secret_namespace, block.secret_name)])
        for index, block in enumerate(tls)
    ]
    return make_ingress_gateways(ing, servers, settings)


def qualified_names(gateways: Iterable[Gateway]) -> list[str]:
    return sorted(f"{gateway.namespace}/{gateway.name}" for gateway in gateways)


def credential_identities(gateway: Gateway) -> set[str]:
    return {
        server.tls.credential_name
        for server in gateway.spec.servers
        if server.tls is not None and server.tls.credential_name
    }


def gateway_identity(gateway: Gateway) -> str:
    identity = gateway.labels.get(CERTIFICATE_IDENTITY_LABEL)
    if not identity:
        raise InvalidStateError(f"{gateway} has no {CERTIFICATE_IDENTITY_LABEL} label")
    return identity


def contains_host(gateway: Gateway, host: str) -> bool:
    return any(host in server.hosts for server in gateway.spec.servers)


def servers_of(gateway: Gateway, ing: Ingress) -> list[Server]:
    prefix: Final = server_port_prefix(ing)
    return sorted(
        (server for server in gateway.spec.servers if server.port.name.startswith(prefix)),
        key=lambda server: server.port.name,
    )


def update_servers(gateway: Gateway, existing: Sequence[Server], desired: Sequence[Server]) -> Gateway:
    """Replaces the servers in existing with desired, leaving every other server untouched."""
    updated: Final = gateway.model_copy(deep=True)
    updated.spec.servers = [server for server in updated.spec.servers if server not in existing]
    updated.spec.servers.extend(server.model_copy(deep=True) for server in desired)
    return updated


# shared gateways

def ingresses_of(gateway: Gateway) -> list[str]:
    value: Final = gateway.annotations.get(INGRESSES_ANNOTATION, "")
    return [key for key in value.split(",") if key]


def _set_ingresses(gateway: Gateway, keys: Iterable[str]) -> None:
    gateway.metadata.annotations = {**gateway.annotations, INGRESSES_ANNOTATION: ",".join(sorted(set(keys)))}


def _make_shared_gateway(
    name: str, kind: GatewayKind, identity: str, servers: list[Server], ing: Ingress, settings: Settings
) -> Gateway:
    gateway: Final = Gateway(
        metadata=KubernetesResourceMetadata(
            name=name,
            namespace=settings.GATEWAY_NAMESPACE,
            labels={
                MANAGED_LABEL: "true",
                GATEWAY_KIND_LABEL: kind,
                CERTIFICATE_IDENTITY_LABEL: identity,
            },
        ),
        spec=GatewaySpec(selector=dict(settings.INGRESS_GATEWAYS[0].selector), servers=servers),
    )
    _set_ingresses(gateway, [ing.key])
    return gateway


def _shared_https_server(identity: str, hosts: Iterable[str]) -> Server:
    return Server(
        hosts=sorted(set(hosts)),
        port=Port(number=HTTPS_PORT, name=f"https-{identity}", protocol="HTTPS"),
        tls=ServerTLSSettings(mode=TLS_MODE_SIMPLE, credential_name=identity),
    )


def wildcard_gateway_name(identity: str) -> str:
    return f"wildcard-{identity}"


def make_wildcard_gateway(identity: str, hosts: Iterable[str], ing: Ingress, settings: Settings) -> Gateway:
    return _make_shared_gateway(
        wildcard_gateway_name(identity),
        GatewayKind.wildcard,
        identity,
        [_shared_https_server(identity, hosts)],
        ing,
        settings,
    )


def domain_alias_gateway_name(identity: str, host: str) -> str:
    return "domain-alias-" + hashlib.sha256(f"{identity}/{host}".encode()).hexdigest()[:20]


def make_domain_alias_gateway(identity: str, ing: Ingress, settings: Settings) -> Gateway:
    host: Final = ing.name
    return _make_shared_gateway(
        domain_alias_gateway_name(identity, host),
        GatewayKind.domain_alias,
        identity,
        [
            _shared_https_server(identity, [host]),
            Server(
                hosts=[host],
                port=Port(number=HTTP_PORT, name=f"http-{identity}", protocol="HTTP"),
                tls=ServerTLSSettings(https_redirect=True),
            ),
        ],
        ing,
        settings,
    )


def ensure_gateway_covers(gateway: Gateway, ing: Ingress, hosts: Iterable[str]) -> tuple[Gateway, bool]:
    """Adds the ingress and its hosts to a shared gateway; returns the copy and whether it changed."""
    updated: Final = gateway.model_copy(deep=True)
    hosts = set(hosts)
    for server in updated.spec.servers:
        server.hosts = sorted(set(server.hosts) | hosts)
    _set_ingresses(updated, [*ingresses_of(updated), ing.key])
    return updated, updated != gateway


def remove_ingress_from_gateway(
    gateway: Gateway, ing: Ingress, hosts: Iterable[str]
) -> tuple[Optional[Gateway], bool]:
    """Detaches the ingress from a shared gateway.

    Returns (modified gateway or None when unchanged, whether the gateway should be deleted).
    """
    remaining: Final = [key for key in ingresses_of(gateway) if key != ing.key]
    if not remaining:
        return None, True

    updated: Final = gateway.model_copy(deep=True)
    hosts = set(hosts)
    for server in updated.spec.servers:
        server.hosts = sorted(set(server.hosts) - hosts)
    updated.spec.servers = [server for server in updated.spec.servers if server.hosts]
    _set_ingresses(updated, remaining)
    return (updated if updated != gateway else None), False


def update_gateway_for_certificate(gateway: Gateway, identity: str) -> Gateway:
    updated: Final = gateway.model_copy(deep=True)
    updated.metadata.labels = {**updated.labels, CERTIFICATE_IDENTITY_LABEL: identity}
    for server in updated.spec.servers:
        if server.tls is not None and server.tls.credential_name:
            server.tls.credential_name = identity
            server.port.name = f"https-{identity}"
        elif server.tls is not None and server.tls.https_redirect:
            server.port.name = f"http-{identity}"
    return updated


# listener selection for a shared credential

class HostMatch(StrEnum):
    # no listener serves the host yet
    none = auto()
    # the listener serving the host is bound to the requested identity
    same = auto()
    # the listener serving the host is bound to another identity
    other = auto()


class ListenerAction(StrEnum):
    reuse = auto()
    create = auto()
    attach = auto()
    repoint = auto()
    create_and_detach = auto()
    attach_and_detach = auto()


# (listener by host, listener by identity found, old certificate still needed elsewhere)
LISTENER_DECISIONS: Final[Mapping[tuple[HostMatch, Optional[bool], Optional[bool]], ListenerAction]] = {
    (HostMatch.same, None, None): ListenerAction.reuse,
    (HostMatch.none, False, None): ListenerAction.create,
    (HostMatch.none, True, None): ListenerAction.attach,
    (HostMatch.other, False, False): ListenerAction.repoint,
    (HostMatch.other, False, True): ListenerAction.create_and_detach,
    (HostMatch.other, True, False): ListenerAction.attach_and_detach,
    (HostMatch.other, True, True): ListenerAction.attach_and_detach,
}


def single(gateways: Sequence[Gateway], what: str) -> Optional[Gateway]:
    if len(gateways) > 1:
        names = ", ".join(sorted(gateway.name for gateway in gateways))
        raise InvalidStateError(f"found multiple gateways ({names}) for {what}")
    return gateways[0] if gateways else None


def classify_host(by_host: Optional[Gateway], identity: str) -> HostMatch:
    if by_host is None:
        return HostMatch.none
    return HostMatch.same if gateway_identity(by_host) == identity else HostMatch.other


def decide_listener(
    host_match: HostMatch,
    identity_listener_found: Optional[bool] = None,
    old_still_needed: Optional[bool] = None,
) -> ListenerAction:
    try:
        return LISTENER_DECISIONS[(host_match, identity_listener_found, old_still_needed)]
    except KeyError:
        raise ValueError(
            f"no listener decision for {host_match}, {identity_listener_found}, {old_still_needed}"
        ) from None
