"""
Reloader — scheduled identity rotation and trust anchor reload.

Each refresh is a short railway:

  source.read_identity() → credentials.rotate(material)
  source.read_anchors()  → trust_store.reload(materials)

A failure at any stage leaves the active snapshot in place and is logged;
it never stops the listener. Infrastructure layer — uses APScheduler (3.x)
with a BackgroundScheduler so the cron job runs beside the asyncio loop.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from peertrust.credential_store import CredentialStore
from peertrust.domain.models import AnchorSet, LocalIdentity
from peertrust.domain.ports import MaterialSource
from peertrust.result import Result
from peertrust.trust_store import TrustStore

log = structlog.get_logger()


def refresh_credentials(source: MaterialSource, credentials: CredentialStore) -> Result[LocalIdentity]:
    """Re-read the identity files and rotate if they are valid."""
    return source.read_identity().flat_map(credentials.rotate)


def refresh_trust_anchors(source: MaterialSource, trust_store: TrustStore) -> Result[AnchorSet]:
    """Re-read the anchor files and reload if every anchor is valid."""
    return source.read_anchors().flat_map(trust_store.reload)


def create_reload_job(
    source: MaterialSource,
    credentials: CredentialStore,
    trust_store: TrustStore,
) -> Callable[[], None]:
    """Zero-argument job running both refreshes and logging each outcome."""

    def _job() -> None:
        identity = refresh_credentials(source, credentials)
        anchors = refresh_trust_anchors(source, trust_store)
        if identity.is_success() and anchors.is_success():
            log.info(
                "reloader.job_completed",
                fingerprint=identity.value().fingerprint,
                anchor_generation=anchors.value().generation,
            )
            return
        for result in (identity, anchors):
            if result.is_failure():
                log.error("reloader.job_failed", failure=str(result.error()))

    return _job


def create_reload_scheduler(job: Callable[[], None], cron: str) -> BackgroundScheduler:
    """
    Create an APScheduler that runs the reload job on a cron schedule.

    Args:
        job: Zero-argument callable (see create_reload_job).
        cron: Standard 5-field cron expression (minute hour dom month dow).

    Returns:
        A configured BackgroundScheduler (call .start() to begin).
    """
    scheduler = BackgroundScheduler()
    minute, hour, dom, month, dow = cron.split()
    scheduler.add_job(
        job,
        trigger=CronTrigger(
            minute=minute,
            hour=hour,
            day=dom,
            month=month,
            day_of_week=dow,
        ),
        id="peertrust_reload",
        name="Identity rotation and trust anchor reload",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
