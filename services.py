import random
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, tzinfo
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError
import structlog

from config import Settings
from errors import ConfigurationError, LedgerError
from ledger_client import LedgerConnection, LedgerStore, get_ledger_store
from models import (
    ChangeEvent,
    MonitorOutcome,
    RunReport,
    RunStatus,
    TransferPlan,
    UnitStatus,
    WorkerAssignment,
    WorkerOutcome,
)

logger = structlog.get_logger()


def _release(connection: LedgerConnection) -> None:
    try:
        connection.close()
    except LedgerError as e:
        logger.warning("Connection release failed", owner=connection.owner, error=str(e))


class TransferWorker:
    """Runs a fixed number of balance-preserving transfers on its own connection.

    Each iteration draws one key from the debit pool and one from the credit
    pool, then applies +1 and -1 in a single transaction. A failed
    begin/mutate/commit ends the worker immediately; nothing is retried,
    since a retry could hide the very anomaly under test.
    """

    def __init__(
        self,
        store: LedgerStore,
        assignment: WorkerAssignment,
        n_iterations: int,
        progress_interval: int,
        rng: Optional[random.Random] = None
    ):
        self.store = store
        self.assignment = assignment
        self.n_iterations = n_iterations
        self.progress_interval = progress_interval
        self.rng = rng or random.Random()

    @property
    def worker_id(self) -> int:
        return self.assignment.worker_id

    @property
    def name(self) -> str:
        return f"worker-{self.worker_id}"

    def run(self) -> WorkerOutcome:
        logger.debug(
            "Transfer worker started",
            worker_id=self.worker_id,
            iterations=self.n_iterations
        )
        commits = 0

        try:
            connection = self.store.connect(self.name)
        except LedgerError as e:
            return self._failed(0, commits, e)

        try:
            for _ in range(self.n_iterations):
                self.transfer(connection)
                commits += 1
                if commits % self.progress_interval == 0:
                    logger.info("%d iterations processed", commits, worker_id=self.worker_id)
        except LedgerError as e:
            return self._failed(commits + 1, commits, e)
        finally:
            _release(connection)

        logger.debug("Transfer worker completed", worker_id=self.worker_id, commits=commits)
        return WorkerOutcome(
            worker_id=self.worker_id,
            status=UnitStatus.completed,
            iterations=commits,
            commits=commits,
            finished_at=time.monotonic()
        )

    def transfer(self, connection: LedgerConnection) -> Tuple[int, int]:
        """Move one unit from the credit-pool account to the debit-pool account."""
        a = self.rng.choice(self.assignment.debit_pool)
        b = self.rng.choice(self.assignment.credit_pool)

        tx = connection.begin_transaction()
        connection.mutate(tx, a, 1)
        connection.mutate(tx, b, -1)
        connection.commit(tx)
        return a, b

    def _failed(self, iterations: int, commits: int, error: LedgerError) -> WorkerOutcome:
        logger.error(
            "Transfer worker failed",
            worker_id=self.worker_id,
            iteration=iterations,
            error=str(error)
        )
        return WorkerOutcome(
            worker_id=self.worker_id,
            status=UnitStatus.failed,
            iterations=iterations,
            commits=commits,
            error=str(error),
            finished_at=time.monotonic()
        )


class InvariantMonitor:
    """Samples the total balance until the stop signal is set.

    The first sample is the baseline. Only samples that differ from the
    previous one are recorded, in observation order.
    """

    name = "monitor"

    def __init__(
        self,
        store: LedgerStore,
        poll_interval: float = 0.0,
        final_sample: bool = True,
        tz: Optional[tzinfo] = None
    ):
        self.store = store
        self.poll_interval = poll_interval
        self.final_sample = final_sample
        self.tz = tz or ZoneInfo("UTC")
        self.samples = 0
        self.baseline: Optional[int] = None
        self.previous: Optional[int] = None
        self.changes: List[ChangeEvent] = []

    def run(self, stop: threading.Event) -> MonitorOutcome:
        try:
            connection = self.store.connect(self.name)
        except LedgerError as e:
            return self._outcome(UnitStatus.failed, e)

        try:
            while not stop.is_set():
                self.sample(connection)
                if self.poll_interval > 0:
                    stop.wait(self.poll_interval)
            if self.final_sample:
                self.sample(connection)
        except LedgerError as e:
            return self._outcome(UnitStatus.failed, e)
        finally:
            _release(connection)

        return self._outcome(UnitStatus.completed)

    def sample(self, connection: LedgerConnection) -> int:
        total = connection.query_invariant_sum()
        self.samples += 1

        if self.previous is None:
            self.baseline = total
            logger.info("Invariant baseline observed", total=total)
        elif total != self.previous:
            event = ChangeEvent(
                sequence=len(self.changes) + 1,
                previous=self.previous,
                total=total,
                observed_at=datetime.now(self.tz)
            )
            self.changes.append(event)
            logger.warning(
                "Invariant changed to %d",
                total,
                previous=self.previous,
                sequence=event.sequence
            )

        self.previous = total
        return total

    def _outcome(self, status: UnitStatus, error: Optional[LedgerError] = None) -> MonitorOutcome:
        if error is not None:
            logger.error("Invariant monitor failed", samples=self.samples, error=str(error))
        else:
            logger.debug("Invariant monitor stopped", samples=self.samples, changes=len(self.changes))
        return MonitorOutcome(
            status=status,
            samples=self.samples,
            baseline=self.baseline,
            changes=list(self.changes),
            error=str(error) if error is not None else None,
            stopped_at=time.monotonic()
        )


class HarnessCoordinator:
    def __init__(
        self,
        store: LedgerStore,
        plan: TransferPlan,
        poll_interval: float = 0.0,
        final_sample: bool = True,
        seed: Optional[int] = None,
        tz: Optional[tzinfo] = None
    ):
        self.store = store
        self.plan = plan
        self.poll_interval = poll_interval
        self.final_sample = final_sample
        self.seed = seed
        self.tz = tz or ZoneInfo("UTC")

    def provision(self) -> None:
        """Seed every account. Raises ProvisioningError before any concurrency starts."""
        accounts = {key: self.plan.initial_amount for key in self.plan.account_keys}
        self.store.provision(accounts)

    def build_workers(self) -> List[TransferWorker]:
        workers = []
        for worker_id, assignment in sorted(self.plan.assignments.items()):
            rng = random.Random(self.seed + worker_id) if self.seed is not None else random.Random()
            workers.append(TransferWorker(
                self.store,
                assignment,
                self.plan.n_iterations,
                self.plan.progress_interval,
                rng=rng
            ))
        return workers

    def run(self) -> RunReport:
        """Provision, run all workers with one monitor, join both phases, report."""
        run_id = str(uuid.uuid4())

        logger.info(
            "Harness run starting",
            run_id=run_id,
            store=self.store.describe(),
            workers=self.plan.worker_count,
            iterations=self.plan.n_iterations,
            accounts=self.plan.n_accounts
        )

        self.provision()

        workers = self.build_workers()
        monitor = InvariantMonitor(
            self.store,
            poll_interval=self.poll_interval,
            final_sample=self.final_sample,
            tz=self.tz
        )
        stop = threading.Event()

        started_at = datetime.now(self.tz)
        started = time.perf_counter()

        with ThreadPoolExecutor(max_workers=len(workers) + 1, thread_name_prefix="harness") as executor:
            worker_futures = [executor.submit(worker.run) for worker in workers]
            monitor_future = executor.submit(monitor.run, stop)

            try:
                # every worker has finished its last commit before the monitor is told to stop
                wait(worker_futures)
                worker_outcomes = [
                    self._collect_worker(worker, future)
                    for worker, future in zip(workers, worker_futures)
                ]
            finally:
                stop.set()
            monitor_outcome = self._collect_monitor(monitor_future)

        elapsed = time.perf_counter() - started
        final_total, verify_error = self._read_final_total()

        report = self._build_report(
            run_id,
            worker_outcomes,
            monitor_outcome,
            final_total,
            verify_error,
            elapsed,
            started_at,
            datetime.now(self.tz)
        )

        log = logger.info if report.status == RunStatus.success else logger.error
        log(
            "Harness run finished",
            run_id=run_id,
            status=report.status.value,
            commits=report.commits,
            expected_total=report.expected_total,
            final_total=report.final_total,
            changes=len(report.monitor.changes),
            tps=report.transactions_per_second
        )
        return report

    def _collect_worker(self, worker: TransferWorker, future: Future) -> WorkerOutcome:
        try:
            return future.result()
        except Exception as e:
            logger.error(
                "Transfer worker crashed",
                worker_id=worker.worker_id,
                error=str(e),
                exc_info=True
            )
            return WorkerOutcome(
                worker_id=worker.worker_id,
                status=UnitStatus.failed,
                error=f"{type(e).__name__}: {e}",
                finished_at=time.monotonic()
            )

    def _collect_monitor(self, future: Future) -> MonitorOutcome:
        try:
            return future.result()
        except Exception as e:
            logger.error("Invariant monitor crashed", error=str(e), exc_info=True)
            return MonitorOutcome(
                status=UnitStatus.failed,
                error=f"{type(e).__name__}: {e}",
                stopped_at=time.monotonic()
            )

    def _read_final_total(self) -> Tuple[Optional[int], Optional[str]]:
        try:
            connection = self.store.connect("verifier")
        except LedgerError as e:
            logger.error("Final invariant read failed", error=str(e))
            return None, str(e)

        try:
            return connection.query_invariant_sum(), None
        except LedgerError as e:
            logger.error("Final invariant read failed", error=str(e))
            return None, str(e)
        finally:
            _release(connection)

    def _build_report(
        self,
        run_id: str,
        workers: List[WorkerOutcome],
        monitor: MonitorOutcome,
        final_total: Optional[int],
        verify_error: Optional[str],
        elapsed: float,
        started_at: datetime,
        finished_at: datetime
    ) -> RunReport:
        expected = self.plan.expected_total

        errors = [f"worker-{w.worker_id}: {w.error}" for w in workers if w.status == UnitStatus.failed]
        if monitor.status == UnitStatus.failed:
            errors.append(f"monitor: {monitor.error}")
        if verify_error is not None:
            errors.append(f"verifier: {verify_error}")

        violated = (
            bool(monitor.changes)
            or (monitor.baseline is not None and monitor.baseline != expected)
            or (final_total is not None and final_total != expected)
        )

        if errors:
            status = RunStatus.failed
        elif violated:
            status = RunStatus.invariant_violated
        else:
            status = RunStatus.success

        commits = sum(w.commits for w in workers)
        return RunReport(
            run_id=run_id,
            status=status,
            expected_total=expected,
            final_total=final_total,
            workers=workers,
            monitor=monitor,
            commits=commits,
            updates=commits * 2,
            selects=monitor.samples,
            elapsed_seconds=round(elapsed, 4),
            transactions_per_second=round(commits / elapsed, 2) if elapsed > 0 else 0.0,
            started_at=started_at,
            finished_at=finished_at,
            error="; ".join(errors) if errors else None
        )


def generate_assignments(
    n_accounts: int,
    worker_count: int,
    pool_size: int,
    seed: Optional[int] = None
) -> Dict[int, dict]:
    """Draw two disjoint pools per worker. Pools of different workers overlap freely."""
    if 2 * pool_size > n_accounts:
        raise ConfigurationError(
            f"Two pools of {pool_size} keys do not fit in {n_accounts} accounts"
        )
    rng = random.Random(seed)
    keys = range(1, n_accounts + 1)
    assignments = {}
    for worker_id in range(worker_count):
        drawn = rng.sample(keys, 2 * pool_size)
        assignments[worker_id] = {
            "worker_id": worker_id,
            "debit_pool": drawn[:pool_size],
            "credit_pool": drawn[pool_size:],
        }
    return assignments


def build_transfer_plan(settings: Settings) -> TransferPlan:
    if settings.worker_pools is not None:
        if len(settings.worker_pools) != settings.transfer_connections:
            raise ConfigurationError(
                f"worker_pools defines {len(settings.worker_pools)} workers, "
                f"transfer_connections is {settings.transfer_connections}"
            )
        assignments = {
            worker_id: {
                "worker_id": worker_id,
                "debit_pool": pools.get("debit", []),
                "credit_pool": pools.get("credit", []),
            }
            for worker_id, pools in settings.worker_pools.items()
        }
    else:
        assignments = generate_assignments(
            settings.n_accounts,
            settings.transfer_connections,
            settings.pool_size,
            settings.seed
        )

    try:
        return TransferPlan(
            n_accounts=settings.n_accounts,
            initial_amount=settings.initial_amount,
            n_iterations=settings.n_iterations,
            progress_interval=settings.progress_interval,
            assignments=assignments
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid transfer plan: {e}") from e


def resolve_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone: {name}") from e


# Factory function for dependency injection
def get_harness_coordinator(settings: Settings, store: Optional[LedgerStore] = None) -> HarnessCoordinator:
    tz = resolve_timezone(settings.timezone)
    plan = build_transfer_plan(settings)
    return HarnessCoordinator(
        store or get_ledger_store(settings),
        plan,
        poll_interval=settings.poll_interval,
        final_sample=settings.final_sample,
        seed=settings.seed,
        tz=tz
    )
