"""Reconciliation loop: resolve tracked entries, then export whitelists.

One tick runs two phases in order:

    A. Update entries: resolve each configured FQDN and shift the entry's
       latest address into current_ip before storing the new one.
    B. Export whitelists: for each configured output, render the allowed
       entries with the schema type's adaptor and save the result with its
       repository.

Failures are isolated per entry and per output. At most one tick runs at a
time; a tick fired while another is running does nothing.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from whitelist_manager.config import Settings, SettingsProvider, WhitelistOutputSpec
from whitelist_manager.errors import ConfigError, ExportError, ResolutionError
from whitelist_manager.export import ExportRegistry
from whitelist_manager.resolver import FqdnResolver
from whitelist_manager.scheduler import JobScheduler
from whitelist_manager.store import Entry, EntryRepository

logger = logging.getLogger(__name__)

MIN_UPDATE_INTERVAL_SECONDS = 30
JOB_NAME = "fqdn-update"


def effective_interval(configured_seconds: int) -> int:
    """Clamp the configured tick interval up to the minimum."""
    return max(MIN_UPDATE_INTERVAL_SECONDS, int(configured_seconds))


class Reconciler:
    def __init__(
        self,
        *,
        settings_provider: SettingsProvider,
        resolver: FqdnResolver,
        entry_repository: EntryRepository,
        export_registry: ExportRegistry,
        scheduler: Optional[JobScheduler] = None,
    ):
        self.settings_provider = settings_provider
        self.resolver = resolver
        self.entry_repository = entry_repository
        self.export_registry = export_registry
        self.scheduler = scheduler or JobScheduler()
        self._running = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    # -------------------------------------------------------------------------
    # Phase A
    # -------------------------------------------------------------------------

    def _update_entry(self, name: str, fqdn: str) -> Entry:
        addresses = self.resolver.resolve(fqdn)

        entry = self.entry_repository.get_by_name(name) or Entry(name=name, fqdn=fqdn)
        entry.shift_ip(addresses[0])
        entry.fqdn = fqdn
        entry.name = name
        self.entry_repository.add_or_update(entry)
        return entry

    def update_entries(self, settings: Settings) -> int:
        """Resolve and store every configured entry. Returns the number updated."""
        updated = 0
        for configured in settings.entries:
            try:
                entry = self._update_entry(configured.name, configured.fqdn)
            except ResolutionError as e:
                logger.error(
                    f"Error while processing entry -> {configured.name} {configured.fqdn}: {e.cause}"
                )
                continue
            except Exception as e:
                logger.error(
                    f"Error while processing entry -> {configured.name} {configured.fqdn}: {e}",
                    exc_info=True,
                )
                continue

            updated += 1
            if entry.current_ip != entry.latest_ip:
                logger.info(f"Entry '{entry.name}' ({entry.fqdn}): {entry.current_ip} -> {entry.latest_ip}")
            else:
                logger.debug(f"Entry '{entry.name}' ({entry.fqdn}) unchanged: {entry.latest_ip}")
        return updated

    # -------------------------------------------------------------------------
    # Phase B
    # -------------------------------------------------------------------------

    def export_whitelist(self, output: WhitelistOutputSpec) -> None:
        """Render and save one output. Raises ExportError on any failure."""
        try:
            route = self.export_registry.get(output.schema_type)
            entries = self.entry_repository.find_by_names(output.allowed_entry_names)
            name, destination = route.parameters(output)
            schema = route.adaptor.get_schema(entries, name)
            route.repository.save(schema, destination)
        except ExportError as e:
            if e.schema_type == output.schema_type:
                raise
            raise ExportError(output.schema_type, e.cause) from e
        except Exception as e:
            raise ExportError(output.schema_type, e) from e

    def export_whitelists(self, settings: Settings) -> int:
        """Export every configured output. Returns the number exported."""
        exported = 0
        for output in settings.whitelists:
            if not output.allowed_entry_names:
                logger.debug(f"Whitelist '{output.schema_type.value}' has no allowed entries, skipping")
                continue
            try:
                self.export_whitelist(output)
            except ExportError as e:
                logger.error(str(e))
                continue
            exported += 1
        return exported

    # -------------------------------------------------------------------------
    # Job
    # -------------------------------------------------------------------------

    def run_reconciliation_tick(self) -> bool:
        """Run one reconciliation. Returns False if another tick was in progress."""
        if not self._running.acquire(blocking=False):
            logger.debug("Previous reconciliation still running, skipping this tick")
            return False

        try:
            try:
                settings = self.settings_provider.current()
            except ConfigError as e:
                logger.error(f"Skipping reconciliation, no usable configuration: {e}")
                return True

            logger.info(
                f"Launching job: {len(settings.entries)} entries, "
                f"{len(settings.whitelists)} whitelists"
            )

            try:
                self.update_entries(settings)
            except Exception as e:
                logger.error(f"Updating entries failed: {e}", exc_info=True)

            try:
                self.export_whitelists(settings)
            except Exception as e:
                logger.error(f"Exporting whitelists failed: {e}", exc_info=True)
        finally:
            self._running.release()
        return True

    def start(self) -> int:
        """Register the periodic job. Returns the effective interval in seconds."""
        logger.info("Starting service...")
        try:
            settings = self.settings_provider.current()
            interval = effective_interval(settings.update_interval_seconds)
            if interval != settings.update_interval_seconds:
                logger.info(
                    f"Update interval {settings.update_interval_seconds}s is below the minimum, "
                    f"using {interval}s"
                )
            self.scheduler.add_job(JOB_NAME, self.run_reconciliation_tick, interval)
        except Exception as e:
            logger.error(f"Failed to start: {e}", exc_info=True)
            raise
        logger.info(f"Started. Reconciling every {interval} second/s")
        return interval

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Remove the job and wait for a tick in progress to finish.

        Returns False if the tick was still running after timeout seconds.
        """
        self.scheduler.remove_all_jobs(timeout)

        if self.is_running:
            logger.info("Waiting for the running reconciliation to finish...")
        if not self._running.acquire(timeout=-1 if timeout is None else timeout):
            logger.warning(f"Reconciliation still running after {timeout}s, stopping anyway")
            return False
        self._running.release()
        logger.info("Service and jobs are stopped")
        return True
