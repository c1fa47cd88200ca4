from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import threading
from models import RunReport


class RunRepository(ABC):
    @abstractmethod
    def get_run(self, run_id: str) -> Optional[RunReport]:
        """Get stored report by run id."""
        pass

    @abstractmethod
    def get_latest_run(self) -> Optional[RunReport]:
        """Get the most recently stored report."""
        pass

    @abstractmethod
    def store_run(self, report: RunReport) -> None:
        """Store a finished run's report."""
        pass

    @abstractmethod
    def get_runs_count(self) -> int:
        """Get total number of stored runs."""
        pass


class InMemoryRunRepository(RunRepository):
    def __init__(self):
        self.store: Dict[str, RunReport] = {}
        self.order: List[str] = []
        self.lock = threading.Lock()

    def get_run(self, run_id: str) -> Optional[RunReport]:
        with self.lock:
            return self.store.get(run_id)

    def get_latest_run(self) -> Optional[RunReport]:
        with self.lock:
            if not self.order:
                return None
            return self.store[self.order[-1]]

    def store_run(self, report: RunReport) -> None:
        with self.lock:
            if report.run_id not in self.store:
                self.order.append(report.run_id)
            self.store[report.run_id] = report

    def get_runs_count(self) -> int:
        with self.lock:
            return len(self.store)

    def clear(self) -> None:
        """Clear all stored runs (for testing)."""
        with self.lock:
            self.store.clear()
            self.order.clear()


_run_repo = InMemoryRunRepository()


def get_run_repository() -> RunRepository:
    return _run_repo


# For tests
def reset_repositories():
    """Reset all repositories to initial state (for testing only)."""
    global _run_repo
    _run_repo = InMemoryRunRepository()
