"""Microsoft 365 sync orchestration.

Runs the sync pipeline (users -> licenses -> user-licenses -> mailbox ->
onedrive) against Graph, upserting into storage and writing one sync log row
per step plus one for the run.
"""

import hmac
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from common.config import ConfigError, config
from common.db import get_session_factory, session_scope
from common.job_logging import SyncRunLog
from common.logging import get_logger, log_context
from common.util import upsert, utcnow
from storage.schema import License, MailboxUsage, OneDriveUsage, User, UserLicense

from .api import GraphAPI
from .errors import (
    AuthError, FetchError, PersistenceError, SyncAuthorizationError, SyncInProgressError
)
from .mapping import (
    build_identity_map, normalize_license, normalize_mailbox_usage, normalize_onedrive_usage,
    normalize_user, normalize_user_license, resolve_principal
)
from .models import Credential
from .sku_names import SkuNameResolver, load_active_mappings

logger = get_logger(__name__)


@dataclass
class StepResult:
    """Outcome of one pipeline step."""
    success: bool
    records_synced: int
    error: Optional[str] = None
    skipped: int = 0
    failed: int = 0

    @property
    def status(self) -> str:
        if not self.success:
            return 'error'
        return 'partial' if self.failed else 'success'

    def to_dict(self) -> Dict[str, Any]:
        result = {'success': self.success, 'recordsSynced': self.records_synced}
        if self.error:
            result['error'] = self.error
        return result


@dataclass
class SyncRunResult:
    """Outcome of a whole sync run."""
    sync_type: str
    results: Dict[str, StepResult]
    timestamp: datetime
    records_synced: int = 0

    @property
    def success(self) -> bool:
        return all(result.success for result in self.results.values())

    @property
    def status(self) -> str:
        return 'success' if self.success else 'partial'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'syncType': self.sync_type,
            'results': {name: result.to_dict() for name, result in self.results.items()},
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class SyncStep:
    """A pipeline step.

    ``requires`` names the steps whose rows this step reads to resolve
    identities; they must precede it in the pipeline.
    """
    name: str
    requires: Tuple[str, ...]
    run: Callable[['SyncOrchestrator', Credential], StepResult] = field(compare=False)


class SyncOrchestrator:
    """Runs sync steps against a Graph client and a storage session factory."""

    def __init__(self, api: GraphAPI, session_factory: Callable[[], Session],
                 resolver: SkuNameResolver, run_log: SyncRunLog,
                 clock: Callable[[], datetime] = utcnow):
        self.api = api
        self.session_factory = session_factory
        self.resolver = resolver
        self.run_log = run_log
        self.clock = clock

    def run(self, sync_type: str = 'full') -> SyncRunResult:
        """Run the steps selected by ``sync_type`` in pipeline order.

        Raises:
            ValueError: unknown sync type
            SyncInProgressError: a running sync holds one of the steps
            AuthError, ConfigError: credentials could not be obtained
        """
        steps = steps_for(sync_type)
        started_at = self.clock()

        with step_locks([step.name for step in steps]), log_context(sync_type=sync_type):
            logger.info(f"Starting {sync_type} sync", steps=[step.name for step in steps])
            results: Dict[str, StepResult] = {}
            try:
                for step in steps:
                    cred = self.api.get_credential()
                    with log_context(step=step.name):
                        results[step.name] = self._run_step(step, cred)
            except (AuthError, ConfigError) as e:
                logger.error(f"{sync_type} sync aborted: {e}")
                self._record(
                    sync_type, 'error', sum(r.records_synced for r in results.values()),
                    str(e), started_at, self.clock()
                )
                raise

            completed_at = self.clock()
            run_result = SyncRunResult(
                sync_type=sync_type,
                results=results,
                timestamp=completed_at,
                records_synced=sum(r.records_synced for r in results.values()),
            )
            errors = [f"{name}: {r.error}" for name, r in results.items() if r.error]
            self._record(
                sync_type, run_result.status, run_result.records_synced,
                '; '.join(errors) or None, started_at, completed_at
            )

        logger.info(
            f"{sync_type} sync finished: {run_result.status}",
            records_synced=run_result.records_synced,
        )
        return run_result

    def _run_step(self, step: SyncStep, cred: Credential) -> StepResult:
        step_started = self.clock()
        logger.info(f"Starting {step.name} step")
        try:
            result = step.run(self, cred)
        except (AuthError, ConfigError):
            raise
        except FetchError as e:
            logger.error(f"{step.name} step failed: {e}", status_code=e.status_code, retryable=e.retryable)
            result = StepResult(success=False, records_synced=0, error=str(e))
        except Exception as e:
            logger.exception(f"{step.name} step failed unexpectedly: {e}")
            result = StepResult(success=False, records_synced=0, error=str(e))

        self._record(
            step.name, result.status, result.records_synced, result.error,
            step_started, self.clock()
        )
        logger.info(
            f"Finished {step.name} step",
            success=result.success,
            records_synced=result.records_synced,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    def _record(self, sync_type: str, status: str, records_synced: int, error_message: Optional[str],
                started_at: datetime, completed_at: datetime) -> None:
        """Write a sync log row; a storage failure here never discards the run's results."""
        try:
            self.run_log.record(sync_type, status, records_synced, error_message, started_at, completed_at)
        except SQLAlchemyError as e:
            logger.error(f"Failed to write sync log row for {sync_type}: {e}", status=status)

    def _write(self, session: Session, entity: str, key: str, write: Callable[[], int]) -> Optional[int]:
        """Run one record write inside a SAVEPOINT.

        Returns the write's count, or None when it failed and was rolled back.
        """
        try:
            with session.begin_nested():
                return write()
        except SQLAlchemyError as e:
            error = PersistenceError(entity, key, e)
            logger.error(str(error), entity=entity, key=key)
            return None

    def sync_users(self, cred: Credential) -> StepResult:
        users = self.api.fetch_users(cred)
        now = self.clock()
        synced = failed = 0

        with session_scope(self.session_factory) as session:
            for user in users:
                values = normalize_user(user, now)
                count = self._write(
                    session, 'user', user.graph_user_id,
                    lambda: _upsert_one(session, User, values, ['graph_user_id'])
                )
                if count is None:
                    failed += 1
                else:
                    synced += count

        return StepResult(success=True, records_synced=synced, failed=failed)

    def sync_licenses(self, cred: Credential) -> StepResult:
        skus = self.api.fetch_subscribed_skus(cred)
        now = self.clock()
        synced = failed = 0

        with session_scope(self.session_factory) as session:
            for sku in skus:
                display_name = self.resolver.resolve_product_name(sku.sku_part_number)
                values = normalize_license(sku, display_name, now)
                count = self._write(
                    session, 'license', sku.sku_id,
                    lambda: _upsert_one(session, License, values, ['sku_id'])
                )
                if count is None:
                    failed += 1
                else:
                    synced += count

        return StepResult(success=True, records_synced=synced, failed=failed)

    def sync_user_licenses(self, cred: Credential) -> StepResult:
        """Replace each known user's license assignments with Graph's current set.

        Only inserted assignments are counted.
        """
        users = self.api.fetch_users(cred)
        now = self.clock()
        synced = skipped = failed = 0

        with session_scope(self.session_factory) as session:
            user_ids = dict(session.query(User.graph_user_id, User.id).all())
            license_ids = dict(session.query(License.sku_id, License.id).all())

            for user in users:
                user_id = user_ids.get(user.graph_user_id)
                if user_id is None:
                    skipped += 1
                    continue

                def replace_assignments() -> int:
                    session.query(UserLicense).filter(
                        UserLicense.user_id == user_id
                    ).delete(synchronize_session=False)
                    inserted = 0
                    for sku_id in user.assigned_sku_ids:
                        license_id = license_ids.get(sku_id)
                        if license_id is None:
                            logger.debug("Skipping assignment of unknown SKU", sku_id=sku_id)
                            continue
                        upsert(
                            session, UserLicense,
                            normalize_user_license(user_id, license_id, sku_id, now),
                            ['user_id', 'sku_id'],
                        )
                        inserted += 1
                    return inserted

                count = self._write(session, 'user license', user.graph_user_id, replace_assignments)
                if count is None:
                    failed += 1
                else:
                    synced += count

        return StepResult(success=True, records_synced=synced, skipped=skipped, failed=failed)

    def _sync_usage(self, rows: Sequence[Any], principal_attr: str, model: Any,
                    normalize: Callable[..., Dict[str, Any]], entity: str) -> StepResult:
        now = self.clock()
        report_date = now.date()
        synced = skipped = failed = 0

        with session_scope(self.session_factory) as session:
            identity = build_identity_map(
                session.query(User.id, User.graph_user_id, User.email, User.user_principal_name).all()
            )
            for row in rows:
                principal = getattr(row, principal_attr)
                user_id = resolve_principal(identity, principal)
                if user_id is None:
                    skipped += 1
                    continue

                values = normalize(row, user_id, report_date, now)
                count = self._write(
                    session, entity, principal,
                    lambda: _upsert_one(session, model, values, ['user_id', 'report_date'])
                )
                if count is None:
                    failed += 1
                else:
                    synced += count

        if skipped:
            logger.info(f"Skipped {skipped} {entity} rows for unknown users")
        return StepResult(success=True, records_synced=synced, skipped=skipped, failed=failed)

    def sync_mailbox_usage(self, cred: Credential) -> StepResult:
        rows = self.api.fetch_mailbox_usage_report(cred)
        return self._sync_usage(rows, 'user_principal_name', MailboxUsage,
                                normalize_mailbox_usage, 'mailbox usage')

    def sync_onedrive_usage(self, cred: Credential) -> StepResult:
        rows = self.api.fetch_onedrive_usage_report(cred)
        return self._sync_usage(rows, 'owner_principal_name', OneDriveUsage,
                                normalize_onedrive_usage, 'onedrive usage')


def _upsert_one(session: Session, model: Any, values: Dict[str, Any], key: List[str]) -> int:
    upsert(session, model, values, key)
    return 1


PIPELINE: Tuple[SyncStep, ...] = (
    SyncStep('users', (), SyncOrchestrator.sync_users),
    SyncStep('licenses', (), SyncOrchestrator.sync_licenses),
    SyncStep('user-licenses', ('users', 'licenses'), SyncOrchestrator.sync_user_licenses),
    SyncStep('mailbox', ('users',), SyncOrchestrator.sync_mailbox_usage),
    SyncStep('onedrive', ('users',), SyncOrchestrator.sync_onedrive_usage),
)


def validate_pipeline(steps: Sequence[SyncStep]) -> None:
    """Raise ValueError unless every step's ``requires`` names an earlier step."""
    seen = set()
    for step in steps:
        missing = [name for name in step.requires if name not in seen]
        if missing:
            raise ValueError(f"Step '{step.name}' requires {', '.join(missing)} to run before it")
        seen.add(step.name)


validate_pipeline(PIPELINE)

SYNC_TYPES = ('full',) + tuple(step.name for step in PIPELINE)


def steps_for(sync_type: str) -> Tuple[SyncStep, ...]:
    """Pipeline steps to execute for a sync type, in order."""
    if sync_type == 'full':
        return PIPELINE
    selected = tuple(step for step in PIPELINE if step.name == sync_type)
    if not selected:
        raise ValueError(f"Unknown sync type: {sync_type}. Expected one of: {', '.join(SYNC_TYPES)}")
    return selected


# One lock per step; a run holds the locks of every step it executes
_STEP_LOCKS: Dict[str, threading.Lock] = {step.name: threading.Lock() for step in PIPELINE}


@contextmanager
def step_locks(step_names: Sequence[str]) -> Iterator[None]:
    """Take the run locks for ``step_names`` without blocking.

    Raises:
        SyncInProgressError: a lock is already held; nothing stays locked
    """
    acquired = []
    try:
        for name in step_names:
            lock = _STEP_LOCKS[name]
            if not lock.acquire(blocking=False):
                raise SyncInProgressError(f"A sync including the '{name}' step is already running")
            acquired.append(lock)
        yield
    finally:
        for lock in reversed(acquired):
            lock.release()


_orchestrator: Optional[SyncOrchestrator] = None


def build_orchestrator(session_factory: Optional[Callable[[], Session]] = None,
                       api: Optional[GraphAPI] = None) -> SyncOrchestrator:
    """Wire a SyncOrchestrator from configuration."""
    session_factory = session_factory or get_session_factory()
    resolver = SkuNameResolver(
        loader=lambda: load_active_mappings(session_factory),
        ttl_seconds=config.sync.sku_cache_ttl_seconds,
    )
    return SyncOrchestrator(
        api=api or GraphAPI(),
        session_factory=session_factory,
        resolver=resolver,
        run_log=SyncRunLog(session_factory),
    )


def get_orchestrator() -> SyncOrchestrator:
    """Process-wide orchestrator, so the resolver cache survives between runs."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


def check_trigger_secret(provided: Optional[str], expected: Optional[str] = None) -> None:
    """Raise SyncAuthorizationError unless ``provided`` matches the configured secret.

    Without a configured secret every caller is allowed.
    """
    expected = expected if expected is not None else config.sync.cron_secret
    if not expected:
        return
    if not provided or not hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8')):
        raise SyncAuthorizationError('Unauthorized')


def run_sync(sync_type: str = 'full', secret: Optional[str] = None,
             orchestrator: Optional[SyncOrchestrator] = None) -> SyncRunResult:
    """Trigger a sync run.

    Raises:
        SyncAuthorizationError: secret configured and not matched
        ValueError: unknown sync type
        SyncInProgressError: overlapping run
        AuthError, ConfigError: credentials could not be obtained
    """
    check_trigger_secret(secret)
    steps_for(sync_type)
    return (orchestrator or get_orchestrator()).run(sync_type)
