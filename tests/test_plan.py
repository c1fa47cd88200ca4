import pytest
import pydantic
from pydantic import ValidationError

import cli
from config import Settings, TestingSettings, get_settings_for_environment
from errors import ConfigurationError
from ledger_client import InMemoryLedgerStore, SqliteLedgerStore, get_ledger_store
from models import TransferPlan, WorkerAssignment
from services import build_transfer_plan, generate_assignments, get_harness_coordinator, resolve_timezone


class TestWorkerAssignment:
    """Test construction-time pool validation."""

    def test_overlapping_pools_rejected(self):
        """Test that a worker's debit and credit pools may not share a key."""
        with pytest.raises(ValidationError):
            WorkerAssignment(worker_id=0, debit_pool=[1, 2, 3], credit_pool=[3, 4])

    def test_empty_pool_rejected(self):
        """Test that both pools need at least one key."""
        with pytest.raises(ValidationError):
            WorkerAssignment(worker_id=0, debit_pool=[], credit_pool=[1])

    def test_duplicate_keys_collapsed(self):
        """Test that repeated keys within one pool are collapsed."""
        assignment = WorkerAssignment(worker_id=0, debit_pool=[5, 1, 5], credit_pool=[2])
        assert assignment.debit_pool == [1, 5]


class TestTransferPlan:
    """Test plan coverage validation."""

    def test_keys_must_be_provisioned(self):
        """Test that pools may only reference keys 1..n_accounts."""
        with pytest.raises(ValidationError):
            TransferPlan(
                n_accounts=10,
                initial_amount=100,
                n_iterations=1,
                progress_interval=1,
                assignments={0: {"worker_id": 0, "debit_pool": [1], "credit_pool": [11]}}
            )

    def test_worker_ids_must_be_contiguous(self):
        """Test that worker ids cover 0..N-1 exactly."""
        with pytest.raises(ValidationError):
            TransferPlan(
                n_accounts=10,
                initial_amount=100,
                n_iterations=1,
                progress_interval=1,
                assignments={1: {"worker_id": 1, "debit_pool": [1], "credit_pool": [2]}}
            )

    def test_expected_total(self):
        """Test the invariant value derived from the plan."""
        plan = build_transfer_plan(TestingSettings())
        assert plan.expected_total == 20 * 100
        assert plan.account_keys == list(range(1, 21))
        assert plan.worker_count == 4


class TestPlanBuilding:
    """Test generated and explicit pool assignments."""

    def test_generated_pools_are_disjoint(self):
        """Test that every generated worker has disjoint pools of pool_size keys."""
        assignments = generate_assignments(100, 8, 8, seed=1)

        assert sorted(assignments) == list(range(8))
        for assignment in assignments.values():
            assert len(assignment["debit_pool"]) == 8
            assert len(assignment["credit_pool"]) == 8
            assert not set(assignment["debit_pool"]) & set(assignment["credit_pool"])

    def test_generated_pools_are_seeded(self):
        """Test that the same seed yields the same pools."""
        assert generate_assignments(50, 3, 4, seed=9) == generate_assignments(50, 3, 4, seed=9)

    def test_pool_size_too_large(self):
        """Test that two pools must fit in the account range."""
        with pytest.raises(ConfigurationError):
            generate_assignments(10, 2, 6)

    def test_explicit_pools(self):
        """Test that worker_pools from settings become the plan."""
        settings = TestingSettings(
            transfer_connections=2,
            worker_pools={
                0: {"debit": [1, 3, 4], "credit": [2, 6]},
                1: {"debit": [1, 3], "credit": [2, 6, 9]},
            }
        )
        plan = build_transfer_plan(settings)

        assert plan.assignments[0].debit_pool == [1, 3, 4]
        assert plan.assignments[1].credit_pool == [2, 6, 9]

    def test_explicit_overlapping_pools(self):
        """Test that an overlapping explicit assignment is a configuration error."""
        settings = TestingSettings(
            transfer_connections=1,
            worker_pools={0: {"debit": [1, 2], "credit": [2, 3]}}
        )
        with pytest.raises(ConfigurationError):
            build_transfer_plan(settings)

    def test_explicit_pools_must_match_worker_count(self):
        """Test that worker_pools must define every worker."""
        settings = TestingSettings(
            transfer_connections=3,
            worker_pools={0: {"debit": [1], "credit": [2]}}
        )
        with pytest.raises(ConfigurationError):
            build_transfer_plan(settings)


class TestSettings:
    """Test settings profiles and store selection."""

    def test_environment_profiles(self):
        """Test environment-specific defaults."""
        assert get_settings_for_environment("testing").ledger_backend == "memory"
        assert get_settings_for_environment("development").log_format == "text"
        assert type(get_settings_for_environment("unknown")) is Settings

    def test_environment_variables(self, monkeypatch):
        """Test that HARNESS_ prefixed variables override defaults."""
        monkeypatch.setenv("HARNESS_TRANSFER_CONNECTIONS", "3")
        monkeypatch.setenv("HARNESS_LEDGER_BACKEND", "memory")

        settings = Settings()

        assert settings.transfer_connections == 3
        assert settings.ledger_backend == "memory"

    def test_ledger_store_factory(self, tmp_path):
        """Test backend selection."""
        assert isinstance(get_ledger_store(TestingSettings()), InMemoryLedgerStore)

        sqlite_settings = TestingSettings(ledger_backend="sqlite", database_path=str(tmp_path / "l.db"))
        assert isinstance(get_ledger_store(sqlite_settings), SqliteLedgerStore)

        with pytest.raises(ConfigurationError):
            get_ledger_store(TestingSettings(ledger_backend="postgres"))

    def test_invalid_begin_mode(self, tmp_path):
        """Test that only SQLite's BEGIN modes are accepted."""
        with pytest.raises(ConfigurationError):
            SqliteLedgerStore(str(tmp_path / "l.db"), begin_mode="SERIALIZABLE")


class TestTimezone:
    """Test that report timezones are validated before a run starts."""

    def test_unknown_timezone_rejected(self):
        """Test that an unknown zone name is a configuration error."""
        with pytest.raises(ConfigurationError):
            get_harness_coordinator(TestingSettings(timezone="Not/AZone"))

    def test_resolve_timezone(self):
        """Test that a known zone is resolved once and handed to the coordinator."""
        coordinator = get_harness_coordinator(TestingSettings(timezone="UTC"))

        assert coordinator.tz == resolve_timezone("UTC")

    def test_cli_exits_with_setup_error(self, monkeypatch):
        """Test that the command line reports a bad timezone with exit code 3."""
        monkeypatch.setenv("HARNESS_TIMEZONE", "Not/AZone")

        assert cli.main(["--env", "testing", "--backend", "memory"]) == cli.EXIT_SETUP_ERROR

    def test_pydantic_major_version(self):
        """Test that the installed pydantic is the 2.x line the models are written for."""
        assert pydantic.VERSION.split(".")[0] == "2"
