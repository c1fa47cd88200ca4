from pydantic import BaseModel, Field, validator
from enum import Enum
from typing import Dict, List, Optional
from datetime import datetime


class WorkerAssignment(BaseModel):
    worker_id: int = Field(..., ge=0, description="Transfer worker identity")
    debit_pool: List[int] = Field(..., min_length=1, description="Keys drawn for the +1 leg")
    credit_pool: List[int] = Field(..., min_length=1, description="Keys drawn for the -1 leg")

    @validator('debit_pool', 'credit_pool')
    def deduplicate_pool(cls, v):
        return sorted(set(v))

    @validator('credit_pool')
    def validate_pools_disjoint(cls, v, values):
        debit_pool = values.get('debit_pool')
        if debit_pool is None:
            return v
        shared = set(debit_pool) & set(v)
        if shared:
            raise ValueError(f'Debit and credit pools share keys: {sorted(shared)}')
        return v


class TransferPlan(BaseModel):
    n_accounts: int = Field(..., gt=0)
    initial_amount: int = Field(...)
    n_iterations: int = Field(..., ge=0)
    progress_interval: int = Field(..., gt=0)
    assignments: Dict[int, WorkerAssignment] = Field(..., min_length=1)

    @validator('assignments')
    def validate_assignments(cls, v, values):
        if sorted(v) != list(range(len(v))):
            raise ValueError('Worker ids must be exactly 0..N-1')
        for worker_id, assignment in v.items():
            if assignment.worker_id != worker_id:
                raise ValueError(f'Assignment for worker {worker_id} names worker {assignment.worker_id}')

        n_accounts = values.get('n_accounts')
        if n_accounts is None:
            return v
        for assignment in v.values():
            unknown = [key for key in assignment.debit_pool + assignment.credit_pool
                       if key < 1 or key > n_accounts]
            if unknown:
                raise ValueError(
                    f'Worker {assignment.worker_id} pools reference unprovisioned accounts: {unknown}'
                )
        return v

    @property
    def worker_count(self) -> int:
        return len(self.assignments)

    @property
    def account_keys(self) -> List[int]:
        return list(range(1, self.n_accounts + 1))

    @property
    def expected_total(self) -> int:
        return self.n_accounts * self.initial_amount


class UnitStatus(str, Enum):
    completed = "completed"
    failed = "failed"


class RunStatus(str, Enum):
    success = "success"
    failed = "failed"
    invariant_violated = "invariant_violated"


class WorkerOutcome(BaseModel):
    worker_id: int
    status: UnitStatus
    iterations: int = Field(0, description="Iterations started, including one that failed")
    commits: int = 0
    error: Optional[str] = None
    finished_at: float = Field(..., description="Monotonic clock reading when the worker stopped")


class ChangeEvent(BaseModel):
    sequence: int = Field(..., description="Position in the monitor's audit trail")
    previous: int
    total: int
    observed_at: datetime


class MonitorOutcome(BaseModel):
    status: UnitStatus
    samples: int = 0
    baseline: Optional[int] = None
    changes: List[ChangeEvent] = Field(default_factory=list)
    error: Optional[str] = None
    stopped_at: float = Field(..., description="Monotonic clock reading when the monitor stopped")


class RunReport(BaseModel):
    run_id: str
    status: RunStatus
    expected_total: int
    final_total: Optional[int] = None
    workers: List[WorkerOutcome]
    monitor: MonitorOutcome
    commits: int
    updates: int
    selects: int
    elapsed_seconds: float
    transactions_per_second: float
    started_at: datetime
    finished_at: datetime
    error: Optional[str] = None

    @property
    def failed_workers(self) -> List[WorkerOutcome]:
        return [w for w in self.workers if w.status == UnitStatus.failed]


class RunRequest(BaseModel):
    n_accounts: Optional[int] = Field(None, gt=0, description="Number of accounts to provision")
    initial_amount: Optional[int] = Field(None, description="Initial balance per account")
    transfer_connections: Optional[int] = Field(None, gt=0, le=64, description="Number of transfer workers")
    n_iterations: Optional[int] = Field(None, ge=0, description="Iterations per worker")
    pool_size: Optional[int] = Field(None, gt=0, description="Keys per generated pool")
    progress_interval: Optional[int] = Field(None, gt=0)
    poll_interval: Optional[float] = Field(None, ge=0)
    seed: Optional[int] = None


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    ledger_backend: str = Field(..., description="Ledger store the harness drives")
    runs_recorded: int = Field(..., description="Number of harness runs in history")
