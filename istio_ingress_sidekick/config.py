import socket
from enum import StrEnum, auto

import pydantic
from pydantic_settings import BaseSettings, SettingsConfigDict


class LockBackend(StrEnum):
    # coordination.k8s.io Lease objects, safe across replicas
    lease = auto()
    # in-process locks, single replica only
    local = auto()


class GatewayConfig(pydantic.BaseModel):
    namespace: str
    name: str
    # empty means the gateway is only reachable through the mesh
    service_url: str = ""
    selector: dict[str, str] = {"istio": "ingressgateway"}

    def qualified_name(self) -> str:
        return f"{self.namespace}/{self.name}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_nested_delimiter="__")

    dry_run: bool = False

    GATEWAY_NAMESPACE: str = "istio-system"
    INGRESS_GATEWAYS: list[GatewayConfig] = [
        GatewayConfig(
            namespace="knative-serving",
            name="knative-ingress-gateway",
            service_url="istio-ingressgateway.istio-system.svc.cluster.local",
        )
    ]
    LOCAL_GATEWAYS: list[GatewayConfig] = [
        GatewayConfig(
            namespace="knative-serving",
            name="knative-local-gateway",
            service_url="knative-local-gateway.istio-system.svc.cluster.local",
        )
    ]

    INGRESS_CLASS: str = "istio.ingress.networking.knative.dev"
    DOMAIN_ALIAS_OWNER_KIND: str = "DomainMapping"
    SYSTEM_INTERNAL_TLS: bool = False

    LOCK_BACKEND: LockBackend = LockBackend.lease
    LOCK_LEASE_SECONDS: int = 30
    LOCK_TIMEOUT: float = 10.0
    LOCK_RETRY_INTERVAL: float = 0.5
    POD_NAME: str = pydantic.Field(default_factory=socket.gethostname)

    WORKERS: int = 4
    SLEEP: float = 5.0
    RESYNC: float = 10 * 60
    LOG_LEVEL: str = "INFO"
