from enum import StrEnum
from typing import Any, ClassVar, Final, Optional, Union

import pydantic
from pydantic import ConfigDict
from pydantic.alias_generators import to_camel

LABEL_PREFIX: Final = "istio-ingress-sidekick.io"
MANAGED_LABEL: Final = f"{LABEL_PREFIX}/managed"
INGRESS_LABEL: Final = f"{LABEL_PREFIX}/ingress"
GATEWAY_KIND_LABEL: Final = f"{LABEL_PREFIX}/gateway-kind"
CERTIFICATE_IDENTITY_LABEL: Final = f"{LABEL_PREFIX}/certificate-identity"
INGRESSES_ANNOTATION: Final = f"{LABEL_PREFIX}/ingresses"
INGRESS_CLASS_ANNOTATION: Final = "networking.knative.dev/ingress.class"


class Model(pydantic.BaseModel):
    # fields written by other controllers survive a read-modify-write
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class OwnerReference(Model):
    api_version: str
    kind: str
    name: str
    uid: str
    controller: Optional[bool] = None
    block_owner_deletion: Optional[bool] = None


class KubernetesResourceMetadata(Model):
    name: str
    namespace: Optional[str] = None
    uid: Optional[str] = None
    generation: Optional[int] = None
    resource_version: Optional[str] = None
    deletion_timestamp: Optional[str] = None
    annotations: Optional[dict[str, str]] = None
    labels: Optional[dict[str, str]] = None
    owner_references: Optional[list[OwnerReference]] = None
    finalizers: Optional[list[str]] = None


class KubernetesResource(Model):
    GROUP: ClassVar[str] = ""
    VERSION: ClassVar[str] = "v1"
    KIND: ClassVar[str] = ""
    PLURAL: ClassVar[str] = ""

    api_version: str = ""
    kind: str = ""
    metadata: KubernetesResourceMetadata

    def model_post_init(self, __context: Any) -> None:
        if not self.api_version:
            self.api_version = f"{self.GROUP}/{self.VERSION}" if self.GROUP else self.VERSION
        if not self.kind:
            self.kind = self.KIND

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or ""

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.labels or {}

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.annotations or {}

    def body(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def is_controlled_by(self, owner: "KubernetesResource") -> bool:
        return any(
            ref.controller and ref.uid == owner.metadata.uid for ref in self.metadata.owner_references or []
        )

    def __str__(self) -> str:
        return f"{self.KIND} {self.namespace}/{self.name}"


# networking.istio.io Gateway
class Port(Model):
    number: int
    name: str
    protocol: str


class ServerTLSSettings(Model):
    https_redirect: Optional[bool] = None
    mode: Optional[str] = None
    credential_name: Optional[str] = None


class Server(Model):
    hosts: list[str]
    port: Port
    tls: Optional[ServerTLSSettings] = None


class GatewaySpec(Model):
    selector: dict[str, str] = {}
    servers: list[Server] = []


class Gateway(KubernetesResource):
    GROUP = "networking.istio.io"
    VERSION = "v1beta1"
    KIND = "Gateway"
    PLURAL = "gateways"

    spec: GatewaySpec = GatewaySpec()


# networking.istio.io VirtualService
class StringMatch(Model):
    exact: Optional[str] = None
    prefix: Optional[str] = None
    regex: Optional[str] = None


class HTTPMatchRequest(Model):
    uri: Optional[StringMatch] = None
    authority: Optional[StringMatch] = None
    headers: Optional[dict[str, StringMatch]] = None
    gateways: Optional[list[str]] = None


class PortSelector(Model):
    number: int


class Destination(Model):
    host: str
    port: Optional[PortSelector] = None


class HeaderOperations(Model):
    set: Optional[dict[str, str]] = None


class Headers(Model):
    request: Optional[HeaderOperations] = None


class HTTPRouteDestination(Model):
    destination: Destination
    weight: Optional[int] = None
    headers: Optional[Headers] = None


class HTTPRewrite(Model):
    authority: Optional[str] = None


class HTTPRoute(Model):
    match: list[HTTPMatchRequest] = []
    route: list[HTTPRouteDestination] = []
    rewrite: Optional[HTTPRewrite] = None
    headers: Optional[Headers] = None


class VirtualServiceSpec(Model):
    hosts: list[str] = []
    gateways: list[str] = []
    http: list[HTTPRoute] = []


class VirtualService(KubernetesResource):
    GROUP = "networking.istio.io"
    VERSION = "v1beta1"
    KIND = "VirtualService"
    PLURAL = "virtualservices"

    spec: VirtualServiceSpec = VirtualServiceSpec()


# networking.istio.io DestinationRule
class ClientTLSSettings(Model):
    mode: str
    subject_alt_names: Optional[list[str]] = None


class HTTPSettings(Model):
    h2_upgrade_policy: Optional[str] = None


class ConnectionPoolSettings(Model):
    http: Optional[HTTPSettings] = None


class TrafficPolicy(Model):
    tls: Optional[ClientTLSSettings] = None
    connection_pool: Optional[ConnectionPoolSettings] = None


class DestinationRuleSpec(Model):
    host: str
    traffic_policy: Optional[TrafficPolicy] = None


class DestinationRule(KubernetesResource):
    GROUP = "networking.istio.io"
    VERSION = "v1beta1"
    KIND = "DestinationRule"
    PLURAL = "destinationrules"

    spec: DestinationRuleSpec


# core/v1
class Secret(KubernetesResource):
    KIND = "Secret"
    PLURAL = "secrets"

    type: Optional[str] = None
    data: dict[str, str] = {}


class ServicePort(Model):
    name: Optional[str] = None
    port: int


class ServiceSpec(Model):
    ports: list[ServicePort] = []


class Service(KubernetesResource):
    KIND = "Service"
    PLURAL = "services"

    spec: ServiceSpec = ServiceSpec()


# networking.internal.knative.dev Ingress
class Visibility(StrEnum):
    public = "ExternalIP"
    cluster_local = "ClusterLocal"


class HTTPOption(StrEnum):
    enabled = "Enabled"
    redirected = "Redirected"


class HeaderMatch(Model):
    exact: str


class IngressBackendSplit(Model):
    service_name: str
    service_namespace: str
    service_port: Union[int, str]
    percent: int = 0
    append_headers: Optional[dict[str, str]] = None


class HTTPIngressPath(Model):
    path: str = ""
    rewrite_host: str = ""
    headers: Optional[dict[str, HeaderMatch]] = None
    append_headers: Optional[dict[str, str]] = None
    splits: list[IngressBackendSplit] = []


class HTTPIngressRuleValue(Model):
    paths: list[HTTPIngressPath] = []


class IngressRule(Model):
    hosts: list[str] = []
    visibility: Visibility = Visibility.public
    http: HTTPIngressRuleValue = HTTPIngressRuleValue()


class IngressTLS(Model):
    hosts: list[str] = []
    secret_name: str
    secret_namespace: str = ""


class IngressSpec(Model):
    rules: list[IngressRule] = []
    tls: list[IngressTLS] = []
    http_option: HTTPOption = HTTPOption.enabled


class ConditionStatus(StrEnum):
    true = "True"
    false = "False"
    unknown = "Unknown"


class Condition(Model):
    type: str
    status: ConditionStatus = ConditionStatus.unknown
    reason: Optional[str] = None
    message: Optional[str] = None
    last_transition_time: Optional[str] = None


class LoadBalancerIngressStatus(Model):
    domain_internal: Optional[str] = None
    mesh_only: Optional[bool] = None


class LoadBalancerStatus(Model):
    ingress: list[LoadBalancerIngressStatus] = []


class IngressStatus(Model):
    observed_generation: Optional[int] = None
    conditions: list[Condition] = []
    public_load_balancer: Optional[LoadBalancerStatus] = None
    private_load_balancer: Optional[LoadBalancerStatus] = None


def _host_covers(tls_host: str, host: str) -> bool:
    if tls_host == host:
        return True
    if tls_host.startswith("*."):
        prefix, _, suffix = host.partition(".")
        return bool(prefix) and suffix == tls_host[2:]
    return False


class Ingress(KubernetesResource):
    GROUP = "networking.internal.knative.dev"
    VERSION = "v1alpha1"
    KIND = "Ingress"
    PLURAL = "ingresses"

    spec: IngressSpec = IngressSpec()
    status: IngressStatus = IngressStatus()

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def set_defaults(self) -> None:
        for tls in self.spec.tls:
            if not tls.secret_namespace:
                tls.secret_namespace = self.namespace
        for rule in self.spec.rules:
            for path in rule.http.paths:
                if len(path.splits) == 1 and not path.splits[0].percent:
                    path.splits[0].percent = 100

    def hosts_for_visibility(self, visibility: Visibility) -> list[str]:
        hosts: set[str] = set()
        for rule in self.spec.rules:
            if rule.visibility is visibility:
                hosts.update(rule.hosts)
        return sorted(hosts)

    def public_hosts(self) -> list[str]:
        return self.hosts_for_visibility(Visibility.public)

    def is_public(self) -> bool:
        return any(rule.visibility is Visibility.public for rule in self.spec.rules)

    def tls_for_visibility(self, visibility: Visibility) -> list[IngressTLS]:
        hosts = self.hosts_for_visibility(visibility)
        return [
            tls
            for tls in self.spec.tls
            if any(_host_covers(tls_host, host) for tls_host in tls.hosts for host in hosts)
        ]

    def is_ready(self) -> bool:
        if self.status.observed_generation != self.metadata.generation:
            return False
        return any(
            c.type == "Ready" and c.status is ConditionStatus.true for c in self.status.conditions
        )

    def owner_reference(self) -> OwnerReference:
        return OwnerReference(
            api_version=self.api_version,
            kind=self.KIND,
            name=self.name,
            uid=self.metadata.uid or "",
            controller=True,
            block_owner_deletion=True,
        )
