from typing import Final, Iterable, Mapping, Optional

from .models import (
    INGRESS_CLASS_ANNOTATION,
    INGRESS_LABEL,
    MANAGED_LABEL,
    Destination,
    HeaderOperations,
    Headers,
    HTTPIngressPath,
    HTTPMatchRequest,
    HTTPRewrite,
    HTTPRoute,
    HTTPRouteDestination,
    Ingress,
    IngressBackendSplit,
    KubernetesResourceMetadata,
    PortSelector,
    StringMatch,
    VirtualService,
    VirtualServiceSpec,
    Visibility,
)

MESH_GATEWAY: Final = "mesh"


def service_hostname(name: str, namespace: str) -> str:
    return f"{name}.{namespace}.svc.cluster.local"


def ingress_virtual_service_name(ing: Ingress) -> str:
    return f"{ing.name}-ingress"


def mesh_virtual_service_name(ing: Ingress) -> str:
    return f"{ing.name}-mesh"


def _headers(values: Optional[Mapping[str, str]]) -> Optional[Headers]:
    if not values:
        return None
    return Headers(request=HeaderOperations(set=dict(values)))


def _destination(split: IngressBackendSplit) -> HTTPRouteDestination:
    port = split.service_port
    if isinstance(port, str) and port.isdigit():
        port = int(port)
    return HTTPRouteDestination(
        destination=Destination(
            host=service_hostname(split.service_name, split.service_namespace),
            port=PortSelector(number=port) if isinstance(port, int) else None,
        ),
        weight=split.percent,
        headers=_headers(split.append_headers),
    )


def make_http_route(hosts: Iterable[str], path: HTTPIngressPath, gateways: Optional[list[str]]) -> HTTPRoute:
    matches: list[HTTPMatchRequest] = []
    for host in sorted(set(hosts)):
        match = HTTPMatchRequest(authority=StringMatch(prefix=host), gateways=gateways or None)
        if path.path:
            match.uri = StringMatch(prefix=path.path)
        if path.headers:
            match.headers = {name: StringMatch(exact=header.exact) for name, header in sorted(path.headers.items())}
        matches.append(match)

    return HTTPRoute(
        match=matches,
        route=[_destination(split) for split in path.splits],
        rewrite=HTTPRewrite(authority=path.rewrite_host) if path.rewrite_host else None,
        headers=_headers(path.append_headers),
    )


def _metadata(ing: Ingress, name: str) -> KubernetesResourceMetadata:
    annotations: Final = {}
    if INGRESS_CLASS_ANNOTATION in ing.annotations:
        annotations[INGRESS_CLASS_ANNOTATION] = ing.annotations[INGRESS_CLASS_ANNOTATION]
    return KubernetesResourceMetadata(
        name=name,
        namespace=ing.namespace,
        labels={MANAGED_LABEL: "true", INGRESS_LABEL: ing.name},
        annotations=annotations or None,
        owner_references=[ing.owner_reference()],
    )


def make_ingress_virtual_service(
    ing: Ingress, gateway_names: Mapping[Visibility, Iterable[str]]
) -> Optional[VirtualService]:
    hosts: set[str] = set()
    gateways: set[str] = set()
    routes: list[HTTPRoute] = []
    for rule in ing.spec.rules:
        rule_gateways = sorted(gateway_names.get(rule.visibility, ()))
        if not rule_gateways:
            continue
        hosts.update(rule.hosts)
        gateways.update(rule_gateways)
        routes.extend(make_http_route(rule.hosts, path, rule_gateways) for path in rule.http.paths)

    if not gateways:
        return None
    return VirtualService(
        metadata=_metadata(ing, ingress_virtual_service_name(ing)),
        spec=VirtualServiceSpec(hosts=sorted(hosts), gateways=sorted(gateways), http=routes),
    )


def make_mesh_virtual_service(ing: Ingress) -> Optional[VirtualService]:
    hosts: set[str] = set()
    routes: list[HTTPRoute] = []
    for rule in ing.spec.rules:
        if rule.visibility is not Visibility.cluster_local:
            continue
        hosts.update(rule.hosts)
        routes.extend(make_http_route(rule.hosts, path, None) for path in rule.http.paths)

    if not hosts:
        return None
    return VirtualService(
        metadata=_metadata(ing, mesh_virtual_service_name(ing)),
        spec=VirtualServiceSpec(hosts=sorted(hosts), gateways=[MESH_GATEWAY], http=routes),
    )


def make_virtual_services(ing: Ingress, gateway_names: Mapping[Visibility, Iterable[str]]) -> list[VirtualService]:
    return [
        vs
        for vs in (make_mesh_virtual_service(ing), make_ingress_virtual_service(ing, gateway_names))
        if vs is not None
    ]
