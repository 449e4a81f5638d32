"""
Creator Studio — services.py
─────────────────────────────────────────────────────────────────
Wires the long-lived services together. One Services object per
app, stored on app.state.services; routes pull it from there.

    services = build_services()                     # from .env
    services = build_services(db_path, providers={"fake": adapter},
                              storage=None, push=None)   # tests
─────────────────────────────────────────────────────────────────
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict

from creatorstudio.catalog import load_catalog
from creatorstudio.coordinator import TaskCoordinator
from creatorstudio.core.config import cfg
from creatorstudio.feed import ChangeFeed
from creatorstudio.jobs import JobStore
from creatorstudio.notifications import NotificationHub, NotificationSink
from creatorstudio.providers import ProviderAdapter, build_providers
from creatorstudio.push import PushNotifier
from creatorstudio.reaper import TimeoutReaper
from creatorstudio.storage.s3 import S3Storage
from creatorstudio.wallet import CreditLedger

logger = logging.getLogger("creatorstudio.services")

_FROM_ENV = object()


@dataclass
class Services:
    store:          JobStore
    ledger:         CreditLedger
    hub:            NotificationHub
    feed:           ChangeFeed
    catalog:        object
    providers:      Dict[str, ProviderAdapter]
    storage:        Optional[S3Storage]
    coordinator:    TaskCoordinator
    reaper:         TimeoutReaper
    webhook_secret: str
    push:           Optional[PushNotifier] = None
    db_path:        Optional[str] = None


def build_services(
    db_path:           Optional[str] = None,
    providers:         Optional[Dict[str, ProviderAdapter]] = None,
    storage=_FROM_ENV,
    catalog=None,
    sink:              Optional[NotificationSink] = None,
    webhook_secret:    Optional[str] = None,
    webhook_base_url:  Optional[str] = None,
    poll_interval:     float = None,
    poll_max_interval: float = None,
    max_attempts:      int = None,
    reconnect_base:    float = None,
    reconnect_max:     float = None,
    image_timeout:     float = None,
    video_timeout:     float = None,
    reaper_interval:   float = None,
    push=_FROM_ENV,
) -> Services:
    """Anything left as None falls back to cfg."""
    if storage is _FROM_ENV:
        storage = S3Storage() if cfg.s3_ready else None
    if push is _FROM_ENV:
        push = PushNotifier() if cfg.push_ready else None
    if providers is None:
        providers = build_providers()
    if webhook_secret is None:
        webhook_secret = cfg.WEBHOOK_SECRET

    feed   = ChangeFeed()
    store  = JobStore(db_path, feed=feed)
    ledger = CreditLedger(db_path)
    hub    = NotificationHub(sink=sink)

    coordinator = TaskCoordinator(
        store             = store,
        ledger            = ledger,
        hub               = hub,
        catalog           = catalog or load_catalog(),
        providers         = providers,
        storage           = storage,
        feed              = feed,
        webhook_base_url  = webhook_base_url,
        webhook_secret    = webhook_secret,
        poll_interval     = poll_interval,
        poll_max_interval = poll_max_interval,
        max_attempts      = max_attempts,
        reconnect_base    = reconnect_base,
        reconnect_max     = reconnect_max,
        push              = push,
    )
    reaper = TimeoutReaper(
        store         = store,
        coordinator   = coordinator,
        image_timeout = image_timeout,
        video_timeout = video_timeout,
        interval      = reaper_interval,
    )

    return Services(
        store          = store,
        ledger         = ledger,
        hub            = hub,
        feed           = feed,
        catalog        = coordinator.catalog,
        providers      = providers,
        storage        = storage,
        coordinator    = coordinator,
        reaper         = reaper,
        webhook_secret = webhook_secret,
        push           = push,
        db_path        = db_path,
    )
