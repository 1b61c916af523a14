"""
Communications Sync Job

Pulls a user's Google Calendar events or Gmail messages, attributes each one
to a CRM founder (and company), and upserts the result so repeated runs never
duplicate or lose rows.

What it does, per (user, provider):
1) Reads the stored OAuth credential (missing or expired -> fail, no refresh)
2) Builds the user's identity index (no companies/founders -> early success)
3) Fetches records from the provider adapter
4) Resolves every record through the tiered resolver
5) Bulk-upserts all records, matched or not
6) Records the sync checkpoint

Usage:
    # One-time calendar sync for a user
    python -m workflows.comms_sync --user-id user-1 --provider calendar

    # Both providers, every 15 minutes
    python -m workflows.comms_sync --user-id user-1 --provider all --interval 900

    # Fetch and resolve without writing
    python -m workflows.comms_sync --user-id user-1 --provider gmail --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import aiosqlite
from dotenv import load_dotenv

from providers.base import BaseProviderAdapter, FetchWindow, RetryConfig
from providers.errors import ProviderAuthError, ProviderError
from providers.gmail import GmailAdapter
from providers.google_calendar import GoogleCalendarAdapter
from resolution.identity_index import build_identity_index
from resolution.records import Channel
from resolution.resolver import Resolver, ResolvedLink, count_by_tier
from storage.base_store import utc_now
from storage.communication_store import CommunicationStore, PersistenceError, UpsertResult
from storage.crm_store import CrmStore
from storage.integration_store import IntegrationStore

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

PROVIDER_ALIASES = {
    "calendar": Channel.CALENDAR,
    "google_calendar": Channel.CALENDAR,
    "gmail": Channel.EMAIL,
    "email": Channel.EMAIL,
}


def parse_provider(name: str) -> Channel:
    """'calendar' / 'gmail' (or the stored channel names) -> Channel."""
    try:
        return PROVIDER_ALIASES[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown provider {name!r}; expected one of {sorted(PROVIDER_ALIASES)}"
        ) from None


@dataclass
class SyncConfig:
    """Configuration for communication syncs"""

    # Storage
    db_path: str = "comms.db"

    # Fetch windows
    calendar_lookback_days: int = 90
    calendar_max_results: int = 250
    gmail_max_results: int = 50

    # Incremental mode: only fetch what changed since the last checkpoint
    incremental: bool = False
    incremental_overlap_hours: int = 24

    # Execution
    timeout_seconds: Optional[float] = 300.0
    provider_max_retries: int = 3

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables"""
        timeout = os.getenv("SYNC_TIMEOUT_SECONDS", "300")
        return cls(
            db_path=os.getenv("COMMS_DB_PATH", "comms.db"),
            calendar_lookback_days=int(os.getenv("CALENDAR_LOOKBACK_DAYS", "90")),
            calendar_max_results=int(os.getenv("CALENDAR_MAX_RESULTS", "250")),
            gmail_max_results=int(os.getenv("GMAIL_MAX_RESULTS", "50")),
            incremental=os.getenv("SYNC_INCREMENTAL", "false").lower() == "true",
            incremental_overlap_hours=int(os.getenv("SYNC_INCREMENTAL_OVERLAP_HOURS", "24")),
            timeout_seconds=float(timeout) if timeout else None,
            provider_max_retries=int(os.getenv("PROVIDER_MAX_RETRIES", "3")),
        )

    @property
    def retry_config(self) -> RetryConfig:
        return RetryConfig(max_attempts=max(1, self.provider_max_retries))


# =============================================================================
# RESULT
# =============================================================================

class SyncState(str, Enum):
    """Where a run is. COMPLETED and FAILED are terminal."""
    IDLE = "idle"
    FETCHING = "fetching"
    RESOLVING = "resolving"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncErrorKind(str, Enum):
    CREDENTIAL_MISSING = "credential_missing"
    CREDENTIAL_EXPIRED = "credential_expired"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    NO_LINKED_ENTITIES = "no_linked_entities"  # success, nothing to do
    PERSISTENCE_FAILURE = "persistence_failure"
    TIMEOUT = "timeout"


@dataclass
class SyncResult:
    """Outcome of one sync run for one (user, provider)."""

    user_id: str
    provider: Channel
    state: SyncState = SyncState.IDLE

    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None

    total_fetched: int = 0
    total_matched: int = 0
    total_persisted: int = 0
    skipped_invalid: int = 0
    matches_by_tier: Dict[str, int] = field(default_factory=dict)

    error_kind: Optional[SyncErrorKind] = None
    error_message: Optional[str] = None
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.state == SyncState.COMPLETED

    @property
    def duration_seconds(self) -> float:
        if not self.completed_at:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def transition(self, state: SyncState) -> None:
        logger.debug(f"{self.user_id}/{self.provider.value}: {self.state.value} -> {state.value}")
        self.state = state

    def fail(self, kind: SyncErrorKind, message: str) -> SyncResult:
        self.error_kind = kind
        self.error_message = message
        self.completed_at = utc_now()
        self.transition(SyncState.FAILED)
        return self

    def complete(self, synced_at: datetime, kind: Optional[SyncErrorKind] = None) -> SyncResult:
        self.synced_at = synced_at
        self.error_kind = kind
        self.completed_at = utc_now()
        self.transition(SyncState.COMPLETED)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "provider": self.provider.value,
            "state": self.state.value,
            "ok": self.ok,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
            "duration_seconds": self.duration_seconds,
            "total_fetched": self.total_fetched,
            "total_matched": self.total_matched,
            "total_persisted": self.total_persisted,
            "skipped_invalid": self.skipped_invalid,
            "matches_by_tier": dict(self.matches_by_tier),
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "dry_run": self.dry_run,
        }

    def log_summary(self) -> None:
        logger.info("=" * 80)
        logger.info(f"COMMS SYNC SUMMARY ({self.provider.value}, user {self.user_id})")
        logger.info("=" * 80)
        logger.info(f"State:     {self.state.value}")
        logger.info(f"Started:   {self.started_at.isoformat()}")
        if self.completed_at:
            logger.info(f"Completed: {self.completed_at.isoformat()}")
            logger.info(f"Duration:  {self.duration_seconds:.2f}s")
        logger.info("")
        logger.info("Records:")
        logger.info(f"  Fetched: {self.total_fetched}")
        logger.info(f"  Matched: {self.total_matched}")
        logger.info(f"  Persisted: {self.total_persisted}")
        if self.skipped_invalid:
            logger.warning(f"  Skipped (invalid): {self.skipped_invalid}")
        if self.matches_by_tier:
            logger.info("")
            logger.info("Matches by tier:")
            for tier, count in self.matches_by_tier.items():
                logger.info(f"  {tier}: {count}")
        if self.error_kind:
            logger.info("")
            log = logger.info if self.ok else logger.error
            log(f"Outcome: {self.error_kind.value}: {self.error_message}")
        if self.dry_run:
            logger.info("")
            logger.info("[DRY RUN] Nothing was written")
        logger.info("=" * 80)


# =============================================================================
# COORDINATOR
# =============================================================================

AdapterFactory = Callable[[Channel, str, str], BaseProviderAdapter]


class CommsSyncCoordinator:
    """
    Runs one sync at a time for a (user, provider) pair.

    Stores must already be initialized. Concurrent runs for the same user are
    not deduplicated here; the upsert keys make them safe but wasteful.

    Usage:
        coordinator = CommsSyncCoordinator(crm, integrations, comms)
        result = await coordinator.sync("user-1", Channel.CALENDAR)
    """

    def __init__(
        self,
        crm: CrmStore,
        integrations: IntegrationStore,
        comms: CommunicationStore,
        config: Optional[SyncConfig] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        resolver: Optional[Resolver] = None,
        clock: Callable[[], datetime] = utc_now,
        dry_run: bool = False,
    ):
        self.crm = crm
        self.integrations = integrations
        self.comms = comms
        self.config = config or SyncConfig()
        self.adapter_factory = adapter_factory or self._default_adapter
        self.resolver = resolver or Resolver()
        self.clock = clock
        self.dry_run = dry_run

    def _default_adapter(self, channel: Channel, access_token: str, user_id: str) -> BaseProviderAdapter:
        adapter_cls = GoogleCalendarAdapter if channel == Channel.CALENDAR else GmailAdapter
        return adapter_cls(
            access_token=access_token,
            retry_config=self.config.retry_config,
            user_key=user_id,
        )

    async def sync(self, user_id: str, provider: Channel) -> SyncResult:
        """Run a sync. Expected failures come back as a failed SyncResult."""
        result = SyncResult(user_id=user_id, provider=provider, dry_run=self.dry_run)
        return await self._run(result)

    async def sync_with_timeout(
        self,
        user_id: str,
        provider: Channel,
        timeout: Optional[float] = None,
    ) -> SyncResult:
        """
        Like sync(), bounded by a wall-clock time limit.

        On expiry the run fails with TIMEOUT. Batches already committed stay
        committed; the checkpoint is not advanced.
        """
        limit = timeout if timeout is not None else self.config.timeout_seconds
        result = SyncResult(user_id=user_id, provider=provider, dry_run=self.dry_run)
        if not limit:
            return await self._run(result)

        try:
            return await asyncio.wait_for(self._run(result), timeout=limit)
        except asyncio.TimeoutError:
            logger.error(
                f"Sync {user_id}/{provider.value} timed out after {limit}s "
                f"while {result.state.value}"
            )
            return result.fail(SyncErrorKind.TIMEOUT, f"Sync exceeded {limit}s while {result.state.value}")

    async def sync_all(self, user_id: str, timeout: Optional[float] = None) -> List[SyncResult]:
        """Calendar then Gmail, one after the other."""
        results = []
        for provider in (Channel.CALENDAR, Channel.EMAIL):
            results.append(await self.sync_with_timeout(user_id, provider, timeout))
        return results

    async def _run(self, result: SyncResult) -> SyncResult:
        user_id, provider = result.user_id, result.provider
        logger.info(f"Starting {provider.value} sync for user {user_id}...")
        started = time.monotonic()

        try:
            # 1. Credential
            credential = await self.integrations.get_credential(user_id, provider.value)
            if credential is None:
                return result.fail(
                    SyncErrorKind.CREDENTIAL_MISSING,
                    f"{provider.value} is not connected for this user",
                )
            now = self.clock()
            if credential.is_expired(now):
                return result.fail(
                    SyncErrorKind.CREDENTIAL_EXPIRED,
                    f"{provider.value} token expired at {credential.expires_at.isoformat()}; reconnect the account",
                )

            # 2. Identity index
            index = await build_identity_index(self.crm, user_id)
            if index.is_empty:
                logger.info(f"User {user_id} has no companies with linked founders; nothing to sync")
                return result.complete(now, kind=SyncErrorKind.NO_LINKED_ENTITIES)

            # 3. Fetch
            result.transition(SyncState.FETCHING)
            window = await self._build_window(user_id, provider, now)
            try:
                async with self.adapter_factory(provider, credential.access_token, user_id) as adapter:
                    records = await adapter.fetch(window)
            except ProviderAuthError as e:
                return result.fail(SyncErrorKind.CREDENTIAL_EXPIRED, str(e))
            except ProviderError as e:
                return result.fail(SyncErrorKind.PROVIDER_UNAVAILABLE, str(e))
            result.total_fetched = len(records)

            # 4. Resolve
            result.transition(SyncState.RESOLVING)
            links = self.resolver.resolve_all(records, index)
            result.total_matched = sum(1 for link in links if link.is_matched)
            result.matches_by_tier = count_by_tier(links)

            # 5. Persist
            result.transition(SyncState.PERSISTING)
            if self.dry_run:
                logger.info(f"[DRY RUN] Would upsert {len(links)} {provider.value} records for {user_id}")
                return result.complete(now)

            try:
                upsert = await self._upsert(user_id, provider, links)
                result.total_persisted = upsert.written
                result.skipped_invalid = upsert.skipped_invalid

                # 6. Checkpoint
                checkpoint = await self.integrations.record_checkpoint(user_id, provider.value, now)
            except PersistenceError as e:
                return result.fail(SyncErrorKind.PERSISTENCE_FAILURE, str(e))
            except aiosqlite.Error as e:
                return result.fail(SyncErrorKind.PERSISTENCE_FAILURE, f"Failed to record checkpoint: {e}")

            return result.complete(checkpoint.synced_at)

        except Exception:
            # Bugs are not a SyncErrorKind; mark the run and let them surface
            result.completed_at = utc_now()
            result.transition(SyncState.FAILED)
            logger.exception(f"{provider.value} sync for {user_id} crashed")
            raise
        finally:
            logger.info(
                f"{provider.value} sync for {user_id} {result.state.value} "
                f"in {time.monotonic() - started:.2f}s"
            )

    async def _build_window(self, user_id: str, provider: Channel, now: datetime) -> FetchWindow:
        checkpoint = None
        if self.config.incremental:
            checkpoint = await self.integrations.get_checkpoint(user_id, provider.value)

        if provider == Channel.CALENDAR:
            time_min = now - timedelta(days=self.config.calendar_lookback_days)
            if checkpoint and checkpoint.synced_at:
                overlap = timedelta(hours=self.config.incremental_overlap_hours)
                time_min = max(time_min, checkpoint.synced_at - overlap)
            return FetchWindow(
                max_results=self.config.calendar_max_results,
                time_min=time_min,
                time_max=now,
            )

        query = None
        if checkpoint and checkpoint.synced_at:
            overlap = timedelta(hours=self.config.incremental_overlap_hours)
            query = f"after:{int((checkpoint.synced_at - overlap).timestamp())}"
        return FetchWindow(max_results=self.config.gmail_max_results, query=query)

    async def _upsert(self, user_id: str, provider: Channel, links: List[ResolvedLink]) -> UpsertResult:
        if provider == Channel.CALENDAR:
            return await self.comms.upsert_calendar_events(user_id, links)
        return await self.comms.upsert_email_messages(user_id, links)


# =============================================================================
# CLI
# =============================================================================

async def run_comms_sync(
    user_id: str,
    providers: List[Channel],
    config: Optional[SyncConfig] = None,
    dry_run: bool = False,
    timeout: Optional[float] = None,
) -> List[SyncResult]:
    config = config or SyncConfig.from_env()

    crm = CrmStore(config.db_path)
    integrations = IntegrationStore(config.db_path)
    comms = CommunicationStore(config.db_path)
    await crm.initialize()
    await integrations.initialize()
    await comms.initialize()

    try:
        coordinator = CommsSyncCoordinator(
            crm=crm,
            integrations=integrations,
            comms=comms,
            config=config,
            dry_run=dry_run,
        )
        results = []
        for provider in providers:
            result = await coordinator.sync_with_timeout(user_id, provider, timeout)
            result.log_summary()
            results.append(result)
        return results
    finally:
        await comms.close()
        await integrations.close()
        await crm.close()


async def run_scheduled(
    interval_seconds: int,
    user_id: str,
    providers: List[Channel],
    config: SyncConfig,
    dry_run: bool = False,
    timeout: Optional[float] = None,
) -> None:
    logger.info(f"Starting scheduled comms sync (interval: {interval_seconds}s)")
    while True:
        try:
            await run_comms_sync(user_id, providers, config=config, dry_run=dry_run, timeout=timeout)
        except Exception as e:
            logger.exception(f"Scheduled sync failed: {e}")
        await asyncio.sleep(interval_seconds)


def main():
    parser = argparse.ArgumentParser(description="Sync Google Calendar / Gmail into the CRM")
    parser.add_argument("--user-id", required=True, help="User whose accounts to sync")
    parser.add_argument(
        "--provider",
        default="all",
        choices=["calendar", "gmail", "all"],
        help="Which provider to sync",
    )
    parser.add_argument("--db-path", help="Path to SQLite database (default: $COMMS_DB_PATH)")
    parser.add_argument("--dry-run", action="store_true", help="Fetch and resolve without writing")
    parser.add_argument("--interval", type=int, help="Run on interval (seconds)")
    parser.add_argument("--timeout", type=float, help="Per-provider time limit (seconds)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    load_dotenv()
    config = SyncConfig.from_env()
    if args.db_path:
        config.db_path = args.db_path

    if args.provider == "all":
        providers = [Channel.CALENDAR, Channel.EMAIL]
    else:
        providers = [parse_provider(args.provider)]

    if args.interval:
        asyncio.run(run_scheduled(
            args.interval,
            args.user_id,
            providers,
            config,
            dry_run=args.dry_run,
            timeout=args.timeout,
        ))
        return

    results = asyncio.run(run_comms_sync(
        args.user_id,
        providers,
        config=config,
        dry_run=args.dry_run,
        timeout=args.timeout,
    ))
    if not all(r.ok for r in results):
        sys.exit(1)


if __name__ == "__main__":
    main()
