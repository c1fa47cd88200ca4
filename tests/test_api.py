import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch

from main import app, limiter
from config import TestingSettings, get_settings
from repositories import reset_repositories

client = TestClient(app)

testing_settings = TestingSettings()


@pytest.fixture(autouse=True)
def reset_state():
    """Reset run history, rate limits and settings before each test."""
    reset_repositories()
    limiter.reset()
    app.dependency_overrides[get_settings] = lambda: testing_settings
    yield
    app.dependency_overrides.clear()


class TestRuns:
    """Test harness runs through the API."""

    def test_run_success(self):
        """Test a default run against the in-memory ledger."""
        response = client.post("/runs", json={})

        assert response.status_code == 201
        data = response.json()

        assert data["status"] == "success"
        assert data["expected_total"] == 2000
        assert data["final_total"] == 2000
        assert data["commits"] == 4 * 50
        assert len(data["workers"]) == 4
        assert data["monitor"]["status"] == "completed"
        assert data["monitor"]["changes"] == []
        assert "run_id" in data
        assert "started_at" in data

    def test_run_with_overrides(self):
        """Test that request fields override the configured workload."""
        response = client.post("/runs", json={
            "transfer_connections": 2,
            "n_iterations": 5,
            "n_accounts": 10,
            "initial_amount": 7,
            "pool_size": 2
        })

        assert response.status_code == 201
        data = response.json()

        assert data["commits"] == 10
        assert data["expected_total"] == 70
        assert [w["worker_id"] for w in data["workers"]] == [0, 1]

    def test_run_on_sqlite(self, tmp_path):
        """Test a run against a SQLite ledger file."""
        app.dependency_overrides[get_settings] = lambda: testing_settings.copy(update={
            "ledger_backend": "sqlite",
            "database_path": str(tmp_path / "ledger.db")
        })

        response = client.post("/runs", json={"n_iterations": 20})

        assert response.status_code == 201
        assert response.json()["status"] == "success"
        assert response.json()["commits"] == 80


class TestRunHistory:
    """Test retrieval of stored reports."""

    def test_latest_run_empty(self):
        """Test that no report exists before the first run."""
        response = client.get("/runs/latest")

        assert response.status_code == 404
        assert response.json()["error_code"] == "HTTP_404"

    def test_run_is_stored(self):
        """Test that finished runs can be fetched by id and as latest."""
        run_id = client.post("/runs", json={"n_iterations": 3}).json()["run_id"]

        latest = client.get("/runs/latest")
        assert latest.status_code == 200
        assert latest.json()["run_id"] == run_id

        by_id = client.get(f"/runs/{run_id}")
        assert by_id.status_code == 200
        assert by_id.json()["commits"] == 12

    def test_unknown_run(self):
        """Test lookup of a run id that was never recorded."""
        response = client.get("/runs/does-not-exist")

        assert response.status_code == 404
        assert "Run not found" in response.json()["detail"]


class TestValidation:
    """Test input and configuration validation."""

    def test_zero_workers(self):
        """Test that at least one worker is required."""
        response = client.post("/runs", json={"transfer_connections": 0})

        assert response.status_code == 422

    def test_pools_do_not_fit(self):
        """Test that a plan whose pools exceed the accounts is rejected."""
        response = client.post("/runs", json={"n_accounts": 4, "pool_size": 3})

        assert response.status_code == 422
        assert "do not fit" in response.json()["detail"]

    def test_invalid_field_type(self):
        """Test a non-numeric iteration count."""
        response = client.post("/runs", json={"n_iterations": "many"})

        assert response.status_code == 422

    def test_unknown_timezone(self):
        """Test that a bad report timezone is rejected as a configuration error."""
        app.dependency_overrides[get_settings] = lambda: testing_settings.copy(
            update={"timezone": "Not/AZone"}
        )

        response = client.post("/runs", json={})

        assert response.status_code == 422
        assert "Unknown timezone" in response.json()["detail"]

    @patch('main.logger')
    def test_logging_on_rejection(self, mock_logger):
        """Test that rejected configurations are logged."""
        response = client.post("/runs", json={"n_accounts": 4, "pool_size": 3})

        assert response.status_code == 422
        mock_logger.warning.assert_called()


class TestErrorHandling:
    """Test store fault handling."""

    def test_provisioning_failure(self, tmp_path):
        """Test that an unreachable ledger is reported as 503."""
        app.dependency_overrides[get_settings] = lambda: testing_settings.copy(update={
            "ledger_backend": "sqlite",
            "database_path": str(tmp_path / "missing" / "ledger.db")
        })

        response = client.post("/runs", json={})

        assert response.status_code == 503
        assert "provisioning failed" in response.json()["detail"]
        assert client.get("/health").json()["runs_recorded"] == 0

    def test_malformed_json(self):
        """Test malformed JSON handling."""
        response = client.post(
            "/runs",
            content="{'invalid': 'json'",
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 422


class TestRateLimiting:
    """Test that the run rate limit follows the injected settings."""

    def test_limit_from_injected_settings(self):
        """Test that a high configured limit lets repeated runs through."""
        codes = [client.post("/runs", json={"n_iterations": 1}).status_code for _ in range(7)]

        assert codes == [201] * 7

    def test_low_limit_enforced(self):
        """Test that runs beyond the configured limit get 429."""
        app.dependency_overrides[get_settings] = lambda: testing_settings.copy(
            update={"rate_limit_per_minute": 2}
        )

        codes = [client.post("/runs", json={"n_iterations": 1}).status_code for _ in range(3)]

        assert codes == [201, 201, 429]


class TestHealthAndUtility:
    """Test health check and utility endpoints."""

    def test_health_check(self):
        """Test health check endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()

        assert data["status"] == "healthy"
        assert data["ledger_backend"] == "memory"
        assert data["runs_recorded"] == 0
        assert "timestamp" in data

    def test_health_counts_runs(self):
        """Test that recorded runs show up in the health check."""
        client.post("/runs", json={"n_iterations": 1})

        assert client.get("/health").json()["runs_recorded"] == 1

    def test_root_endpoint(self):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()

        assert "message" in data
        assert "docs" in data

    @pytest.mark.asyncio
    async def test_run_async_client(self):
        """Test a run through an async client."""
        import httpx

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/runs", json={"n_iterations": 2})

        assert response.status_code == 201
        assert response.json()["commits"] == 8


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
