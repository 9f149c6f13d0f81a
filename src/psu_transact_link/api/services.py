from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..config import AppConfig
from ..linking import LinkService
from ..portal.browser import BrowserFactory
from ..portal.landing import PortalLandingResolver
from ..portal.login import CredentialSubmitter
from ..portal.transactions import TransactionExtractor
from ..sessions import SessionRegistry
from ..state import StateStore
from ..sync import SyncCoordinator


@dataclass
class Services:
    """Everything a request handler needs, built once per app."""

    cfg: AppConfig
    store: StateStore
    registry: SessionRegistry
    link: LinkService
    sync: SyncCoordinator


def build_services(cfg: AppConfig, *, store: Optional[StateStore] = None) -> Services:
    store = store or StateStore(cfg.state.db_path)
    registry = SessionRegistry(cfg.sessions)
    browsers = BrowserFactory(cfg)
    link = LinkService(
        store=store,
        registry=registry,
        browsers=browsers,
        submitter=CredentialSubmitter(cfg.portal),
        landing=PortalLandingResolver(cfg.portal),
    )
    sync = SyncCoordinator(
        cfg.sync,
        store=store,
        browsers=browsers,
        extractor=TransactionExtractor(cfg.portal),
    )
    return Services(cfg=cfg, store=store, registry=registry, link=link, sync=sync)
