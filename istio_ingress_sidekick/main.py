import asyncio
import logging
from typing import Final

from . import config
from .controller import Controller, IngressWatcher
from .k8s import Store
from .lock import create_lock_provider
from .reconciler import IngressReconciler
from .status import GatewayPodsProbe

log: Final = logging.getLogger(__name__)


async def main() -> None:
    settings: Final = config.Settings()
    logging.basicConfig(level=settings.LOG_LEVEL)

    log.info("Polling every %.1f seconds, resyncing every %.0f seconds", settings.SLEEP, settings.RESYNC)
    log.info("Ingress gateways: %s", ", ".join(g.qualified_name() for g in settings.INGRESS_GATEWAYS))
    log.info("Local gateways: %s", ", ".join(g.qualified_name() for g in settings.LOCAL_GATEWAYS))
    log.info("Certificate locks: %s in %s", settings.LOCK_BACKEND, settings.GATEWAY_NAMESPACE)
    if settings.dry_run:
        log.warning("Dry run, nothing will be persisted")

    Store.initialize()

    store: Final = Store(dry_run=settings.dry_run)
    reconciler: Final = IngressReconciler(
        store,
        create_lock_provider(settings),
        GatewayPodsProbe(settings),
        settings,
    )
    controller: Final = Controller(store, reconciler, settings)

    await controller.run(IngressWatcher(store), settings.SLEEP, settings.RESYNC)


def cli() -> None:
    asyncio.run(main())
