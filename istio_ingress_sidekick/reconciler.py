import logging
import uuid
from collections import defaultdict
from typing import Final, Iterable, Optional

from .certificates import secret_identity
from .config import Settings
from .destination_rules import backend_splits, is_http2, make_internal_encryption_destination_rule
from .errors import (
    CollaboratorError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    NotOwnedError,
    RetryableError,
    SidekickError,
)
from .gateways import (
    GatewayKind,
    HostMatch,
    ListenerAction,
    categorize_tls,
    classify_host,
    contains_host,
    credential_identities,
    decide_listener,
    ensure_gateway_covers,
    gateway_identity,
    ingresses_of,
    make_domain_alias_gateway,
    make_http_server,
    make_ingress_gateways,
    make_tls_server,
    make_wildcard_gateway,
    qualified_names,
    remove_ingress_from_gateway,
    servers_of,
    single,
    update_gateway_for_certificate,
    update_servers,
    wildcard_gateway_name,
)
from .k8s import Store
from .lock import HeldLocks, LockProvider
from .models import (
    CERTIFICATE_IDENTITY_LABEL,
    GATEWAY_KIND_LABEL,
    INGRESS_LABEL,
    MANAGED_LABEL,
    ConditionStatus,
    DestinationRule,
    Gateway,
    HTTPOption,
    Ingress,
    Secret,
    Server,
    Service,
    VirtualService,
    Visibility,
)
from .reconcile import apply, converge, is_managed, prune
from .secrets import make_mirror_secret
from .status import (
    NOT_OWNED,
    READY,
    RECONCILE_INGRESS_FAILED,
    RECONCILE_VIRTUAL_SERVICE_FAILED,
    ReadinessProbe,
    get_condition,
    initialize_conditions,
    lb_status,
    mark_ingress_not_ready,
    mark_load_balancer_failed,
    mark_load_balancer_not_ready,
    mark_load_balancer_ready,
    mark_network_configured,
)
from .virtual_services import make_virtual_services

log: Final = logging.getLogger(__name__)

SHARED_KINDS: Final = (GatewayKind.wildcard, GatewayKind.domain_alias)


def leaves_status_untouched(e: Exception, was_ready: bool) -> bool:
    if isinstance(e, CollaboratorError):
        return was_ready
    return isinstance(e, RetryableError)


class IngressReconciler:
    def __init__(self, store: Store, lock_provider: LockProvider, probe: ReadinessProbe, settings: Settings) -> None:
        self.store = store
        self.lock_provider = lock_provider
        self.probe = probe
        self.settings = settings

    def _locks(self) -> HeldLocks:
        # workers of one replica must not share a holder
        return HeldLocks(self.lock_provider, f"{self.settings.POD_NAME}/{uuid.uuid4().hex[:8]}")

    def _private_selector(self, ing: Ingress) -> dict[str, str]:
        return {MANAGED_LABEL: "true", INGRESS_LABEL: ing.name, GATEWAY_KIND_LABEL: GatewayKind.private}

    def _owned_selector(self, ing: Ingress) -> dict[str, str]:
        return {MANAGED_LABEL: "true", INGRESS_LABEL: ing.name}

    def _shared_gateways(self, kind: GatewayKind, **labels: str) -> list[Gateway]:
        return self.store.list(
            Gateway,
            self.settings.GATEWAY_NAMESPACE,
            {MANAGED_LABEL: "true", GATEWAY_KIND_LABEL: kind, **labels},
        )

    def is_domain_alias(self, ing: Ingress) -> bool:
        return any(ref.kind == self.settings.DOMAIN_ALIAS_OWNER_KIND for ref in ing.metadata.owner_references or [])

    def reconcile(self, ing: Ingress) -> None:
        """Converges the generated objects of the ingress and updates its status in place.

        The status is restored to what it was on entry when the failure is expected to
        resolve itself on retry.
        """
        original: Final = ing.status.model_copy(deep=True)
        was_ready: Final = ing.is_ready()
        try:
            self._reconcile(ing, was_ready)
        except Exception as e:
            log.error("%s: reconciliation failed: %s", ing.key, e)
            if leaves_status_untouched(e, was_ready):
                ing.status = original
            else:
                ready = get_condition(ing, READY)
                if ready is None or ready.status is not ConditionStatus.false:
                    mark_ingress_not_ready(ing, RECONCILE_INGRESS_FAILED, "Ingress reconciliation failed")
            raise

    def _reconcile(self, ing: Ingress, was_ready: bool) -> None:
        ing.set_defaults()
        initialize_conditions(ing)

        gateway_names: Final[dict[Visibility, list[str]]] = {
            Visibility.public: [gateway.qualified_name() for gateway in self.settings.INGRESS_GATEWAYS],
            Visibility.cluster_local: [gateway.qualified_name() for gateway in self.settings.LOCAL_GATEWAYS],
        }

        with self._locks() as locks:
            private_gateways: list[Gateway] = []
            shared_names: set[str] = set()
            stale_identities: set[str] = set()

            if self.is_domain_alias(ing):
                shared, replaced = self._reconcile_domain_alias(ing, locks)
                gateway_names[Visibility.public] = qualified_names([shared])
                shared_names.add(shared.name)
                if replaced:
                    stale_identities.add(replaced)
            else:
                servers: list[Server] = []
                tls_requested = ing.is_public() and bool(ing.tls_for_visibility(Visibility.public))
                if tls_requested:
                    servers, wildcards = self._reconcile_tls(ing, locks)
                    shared_names.update(gateway.name for gateway in wildcards)
                if tls_requested or (ing.is_public() and ing.spec.http_option is HTTPOption.redirected):
                    servers.append(make_http_server(ing, ing.public_hosts()))
                    private_gateways = make_ingress_gateways(ing, servers, self.settings)
                    gateway_names[Visibility.public] = qualified_names(private_gateways)
                if shared_names:
                    shared_qualified = {f"{self.settings.GATEWAY_NAMESPACE}/{name}" for name in shared_names}
                    gateway_names[Visibility.public] = sorted({*gateway_names[Visibility.public], *shared_qualified})

            previous: Final = [
                gateway
                for gateway in self.store.list(Gateway, ing.namespace, self._private_selector(ing))
                if gateway.is_controlled_by(ing)
            ]
            converge(
                self.store,
                ing,
                Gateway,
                ing.namespace,
                self._private_selector(ing),
                private_gateways,
                prune_extra=False,
            )

            self._reconcile_routes(ing, gateway_names)

            # listeners and secrets the routes no longer point at
            self._detach_shared(ing, locks, keep=shared_names)
            prune(
                self.store,
                ing,
                Gateway,
                ing.namespace,
                self._private_selector(ing),
                (gateway.name for gateway in private_gateways),
            )
            in_use: Final = set().union(*(credential_identities(gateway) for gateway in private_gateways))
            stale_identities.update(set().union(*(credential_identities(gateway) for gateway in previous)) - in_use)
            for identity in sorted(stale_identities):
                self.release_certificate(identity, locks)

        self._reconcile_destination_rules(ing)
        self._reconcile_status(ing, was_ready)

    def _origin_identities(self, ing: Ingress, visibility: Visibility) -> dict[tuple[str, str], tuple[str, Secret]]:
        identities: dict[tuple[str, str], tuple[str, Secret]] = {}
        for tls in ing.tls_for_visibility(visibility):
            ref = (tls.secret_namespace, tls.secret_name)
            if ref not in identities:
                origin = self.store.get(Secret, *ref)
                identities[ref] = (secret_identity(origin), origin)
        return identities

    def _mirror(self, identities: Iterable[tuple[str, Secret]], locks: HeldLocks) -> None:
        mirrored: Final = dict(identities)
        locks.acquire(*mirrored)
        for identity, origin in sorted(mirrored.items()):
            apply(self.store, make_mirror_secret(origin, identity, self.settings.GATEWAY_NAMESPACE))

    def _reconcile_tls(self, ing: Ingress, locks: HeldLocks) -> tuple[list[Server], list[Gateway]]:
        """Mirrors the public TLS credentials and returns (private servers, wildcard gateways)."""
        origins: Final = self._origin_identities(ing, Visibility.public)
        self._mirror(origins.values(), locks)

        exact, wildcard = categorize_tls(ing.tls_for_visibility(Visibility.public))
        servers: Final = [
            make_tls_server(ing, index, block.hosts, origins[(block.secret_namespace, block.secret_name)][0])
            for index, block in enumerate(exact)
        ]

        wildcard_hosts: defaultdict[str, set[str]] = defaultdict(set)
        for block in wildcard:
            wildcard_hosts[origins[(block.secret_namespace, block.secret_name)][0]].update(block.hosts)
        gateways: Final = [
            self._ensure_wildcard_gateway(ing, identity, hosts) for identity, hosts in sorted(wildcard_hosts.items())
        ]
        return servers, gateways

    def _ensure_wildcard_gateway(self, ing: Ingress, identity: str, hosts: Iterable[str]) -> Gateway:
        name: Final = wildcard_gateway_name(identity)
        try:
            current = self.store.get(Gateway, self.settings.GATEWAY_NAMESPACE, name)
        except NotFoundError:
            return self.store.create(make_wildcard_gateway(identity, hosts, ing, self.settings))

        if not is_managed(current):
            raise NotOwnedError(Gateway.KIND, [name])
        updated, changed = ensure_gateway_covers(current, ing, hosts)
        return self.store.update(updated) if changed else current

    def _reconcile_domain_alias(self, ing: Ingress, locks: HeldLocks) -> tuple[Gateway, Optional[str]]:
        """Picks the shared listener for a domain-alias ingress.

        Returns the listener and the identity it was repointed away from, if any.
        """
        if len(ing.spec.tls) != 1:
            raise InvalidStateError(f"expected exactly one Secret, but got {len(ing.spec.tls)}")

        tls: Final = ing.spec.tls[0]
        origin: Final = self.store.get(Secret, tls.secret_namespace, tls.secret_name)
        identity: Final = secret_identity(origin)
        host: Final = ing.name
        what: Final = f"certificate {identity}"

        by_identity = single(
            self._shared_gateways(GatewayKind.domain_alias, **{CERTIFICATE_IDENTITY_LABEL: identity}), what
        )
        if by_identity is not None and contains_host(by_identity, host):
            _, changed = ensure_gateway_covers(by_identity, ing, [host])
            if not changed:
                log.debug("%s: reusing %s", ing.key, by_identity)
                return by_identity, None

        self._mirror([(identity, origin)], locks)

        shared: Final = self._shared_gateways(GatewayKind.domain_alias)
        by_host = single([gateway for gateway in shared if contains_host(gateway, host)], f"host {host}")
        by_identity = single([gateway for gateway in shared if gateway_identity(gateway) == identity], what)
        host_match: Final = classify_host(by_host, identity)

        if host_match is HostMatch.same:
            action = decide_listener(host_match)
        elif host_match is HostMatch.none:
            action = decide_listener(host_match, by_identity is not None)
        else:
            old_identity = gateway_identity(by_host)
            locks.acquire(old_identity)
            try:
                by_host = self.store.get(Gateway, by_host.namespace, by_host.name)
            except NotFoundError as e:
                raise ConflictError(f"{by_host} was deleted while waiting for lock {old_identity}") from e
            if gateway_identity(by_host) != old_identity:
                raise ConflictError(f"{by_host} changed certificate while waiting for lock {old_identity}")
            action = decide_listener(
                host_match, by_identity is not None, self._certificate_still_needed(by_host, ing, identity)
            )
        log.info("%s: %s listener for %s", ing.key, action, what)

        if action is ListenerAction.reuse:
            return self._cover(by_host, ing, host), None
        if action in (ListenerAction.create, ListenerAction.create_and_detach):
            return self.store.create(make_domain_alias_gateway(identity, ing, self.settings)), None
        if action in (ListenerAction.attach, ListenerAction.attach_and_detach):
            return self._cover(by_identity, ing, host), None

        # repoint
        repointed: Final = self._cover(update_gateway_for_certificate(by_host, identity), ing, host, force=True)
        return repointed, gateway_identity(by_host)

    def _cover(self, gateway: Gateway, ing: Ingress, host: str, *, force: bool = False) -> Gateway:
        updated, changed = ensure_gateway_covers(gateway, ing, [host])
        return self.store.update(updated) if changed or force else gateway

    def _certificate_still_needed(self, gateway: Gateway, ing: Ingress, identity: str) -> bool:
        """Whether another ingress served by the gateway still presents a different certificate."""
        for key in ingresses_of(gateway):
            if key == ing.key:
                continue
            namespace, _, name = key.partition("/")
            try:
                other = self.store.get(Ingress, namespace, name)
            except NotFoundError:
                continue
            if other.metadata.deletion_timestamp:
                continue

            other.set_defaults()
            if len(other.spec.tls) != 1:
                return True
            tls = other.spec.tls[0]
            try:
                origin = self.store.get(Secret, tls.secret_namespace, tls.secret_name)
            except NotFoundError:
                log.info("%s: secret of %s is missing, keeping its certificate", ing.key, key)
                return True
            if secret_identity(origin) != identity:
                return True
        return False

    def _detach(self, gateway: Gateway, ing: Ingress, locks: HeldLocks) -> None:
        identity: Final = gateway_identity(gateway)
        locks.acquire(identity)
        try:
            current = self.store.get(Gateway, gateway.namespace, gateway.name)
        except NotFoundError:
            return
        if ing.key not in ingresses_of(current):
            return

        kind: Final = current.labels.get(GATEWAY_KIND_LABEL)
        hosts: Final = [ing.name] if kind == GatewayKind.domain_alias else []
        updated, delete = remove_ingress_from_gateway(current, ing, hosts)
        if delete:
            log.info("%s: %s has no other ingress, deleting", ing.key, current)
            try:
                self.store.delete(
                    Gateway, current.namespace, current.name, resource_version=current.metadata.resource_version
                )
            except NotFoundError:
                pass
        elif updated is not None:
            self.store.update(updated)
        self.release_certificate(gateway_identity(current), locks)

    def _detach_shared(self, ing: Ingress, locks: HeldLocks, keep: Iterable[str] = ()) -> None:
        kept: Final = set(keep)
        for kind in SHARED_KINDS:
            for gateway in sorted(self._shared_gateways(kind), key=lambda gateway: gateway.name):
                if gateway.name not in kept and ing.key in ingresses_of(gateway):
                    self._detach(gateway, ing, locks)

    def release_certificate(self, identity: str, locks: HeldLocks) -> None:
        """Deletes the mirrored secret of the identity once no managed gateway references it."""
        locks.acquire(identity)
        gateways: Final = self.store.list(Gateway, None, {MANAGED_LABEL: "true"})
        if any(identity in credential_identities(gateway) for gateway in gateways):
            return

        try:
            secret = self.store.get(Secret, self.settings.GATEWAY_NAMESPACE, identity)
        except NotFoundError:
            return
        if not is_managed(secret):
            log.warning("%s is not managed by us, not deleting", secret)
            return
        try:
            self.store.delete(
                Secret, secret.namespace, secret.name, resource_version=secret.metadata.resource_version
            )
        except NotFoundError:
            pass

    def _reconcile_routes(self, ing: Ingress, gateway_names: dict[Visibility, list[str]]) -> None:
        try:
            converge(
                self.store,
                ing,
                VirtualService,
                ing.namespace,
                self._owned_selector(ing),
                make_virtual_services(ing, gateway_names),
            )
        except NotOwnedError as e:
            mark_load_balancer_failed(ing, NOT_OWNED, str(e))
            raise
        except SidekickError as e:
            mark_load_balancer_failed(ing, RECONCILE_VIRTUAL_SERVICE_FAILED, str(e))
            raise

    def _reconcile_destination_rules(self, ing: Ingress) -> None:
        desired: list[DestinationRule] = []
        if self.settings.SYSTEM_INTERNAL_TLS:
            for hostname, split in backend_splits(ing):
                service = self.store.get(Service, split.service_namespace, split.service_name)
                desired.append(make_internal_encryption_destination_rule(hostname, ing, is_http2(service)))
        converge(self.store, ing, DestinationRule, ing.namespace, self._owned_selector(ing), desired)

    def _reconcile_status(self, ing: Ingress, was_ready: bool) -> None:
        mark_network_configured(ing)
        if was_ready:
            # a regressed data plane is only noticed on the next generation
            log.debug("%s: already ready, skipping probe", ing.key)
        elif self.probe.is_ready(ing):
            mark_load_balancer_ready(
                ing, lb_status(self.settings.INGRESS_GATEWAYS), lb_status(self.settings.LOCAL_GATEWAYS)
            )
        else:
            mark_load_balancer_not_ready(ing)
        ing.status.observed_generation = ing.metadata.generation

    def finalize(self, ing: Ingress) -> None:
        """Removes everything the ingress contributed; default gateways are kept."""
        ing.set_defaults()
        with self._locks() as locks:
            for config in [*self.settings.INGRESS_GATEWAYS, *self.settings.LOCAL_GATEWAYS]:
                gateway = self.store.get(Gateway, config.namespace, config.name)
                existing = servers_of(gateway, ing)
                if existing:
                    log.info("%s: removing %d servers from %s", ing.key, len(existing), gateway)
                    self.store.update(update_servers(gateway, existing, []))

            self._detach_shared(ing, locks)

            deleted: Final = prune(self.store, ing, Gateway, ing.namespace, self._private_selector(ing), ())
            for identity in sorted(set().union(*(credential_identities(gateway) for gateway in deleted))):
                self.release_certificate(identity, locks)
