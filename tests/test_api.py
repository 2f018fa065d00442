"""Tests for API endpoints."""

import asyncio


def _submit(client, **overrides):
    body = {
        "owner_id": "owner-1",
        "items": [{"prompt": "a lighthouse at dawn"}, {"prompt": "a fox under snow"}],
        "api_key": "test-gemini-api-key",
    }
    body.update(overrides)
    return client.post("/api/batches/", json=body)


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_check(self, client):
        """Test health check returns healthy status."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data
        assert "environment" in data


class TestSubmitEndpoint:
    """Test batch submission."""

    def test_submit_returns_202(self, client):
        """Test that a valid batch is accepted without waiting for processing."""
        response = _submit(client)
        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "queued"
        assert data["total_items"] == 2
        assert data["cost_estimate"]["image_count"] == 2

    def test_submit_prompts_text(self, client):
        """Test blank-line separated prompt text."""
        response = _submit(client, items=None, prompts_text="first prompt\n\nsecond prompt\n\nthird prompt")
        assert response.status_code == 202
        assert response.json()["total_items"] == 3

    def test_submit_pre_encrypted_key(self, client, sealed_key):
        """Test a key sealed by the caller."""
        response = _submit(client, api_key=None, encrypted_api_key=sealed_key.to_dict())
        assert response.status_code == 202

    def test_submit_validation_errors(self, client):
        """Test that invalid items return 422 with every error listed."""
        response = _submit(client, items=[{"prompt": "x"}, {"prompt": "<script>bad</script>"}])
        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["message"] == "Batch validation failed"
        assert len(detail["errors"]) == 2

    def test_submit_missing_key(self, client):
        """Test that a request without any API key is rejected."""
        response = _submit(client, api_key=None)
        assert response.status_code == 422

    def test_submit_malformed_sealed_key(self, client):
        """Test that a sealed key that is not base64 is a bad request."""
        response = _submit(client, api_key=None, encrypted_api_key={"ciphertext": "!!", "nonce": "??"})
        assert response.status_code == 400


class TestBatchEndpoints:
    """Test status, items, results and cancel endpoints."""

    def test_status(self, client):
        """Test polling a queued batch."""
        batch_id = _submit(client).json()["batch_id"]

        response = client.get(f"/api/batches/{batch_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "queued"
        assert data["total"] == 2
        assert data["pending"] == 2
        assert data["progress_percent"] == 0.0

    def test_results_after_processing(self, client, make_pool):
        """Test that results and items reflect a finished batch."""
        batch_id = _submit(client).json()["batch_id"]
        asyncio.run(make_pool().run_until_empty())

        status = client.get(f"/api/batches/{batch_id}").json()
        assert status["status"] == "completed"
        assert status["succeeded"] == 2

        results = client.get(f"/api/batches/{batch_id}/results").json()
        assert len(results["results"]) == 2
        assert results["results"][0]["content_type"] == "image/png"

        items = client.get(f"/api/batches/{batch_id}/items").json()
        assert [i["status"] for i in items] == ["succeeded", "succeeded"]

    def test_cancel(self, client):
        """Test cancelling a queued batch, then cancelling it again."""
        batch_id = _submit(client).json()["batch_id"]

        response = client.post(f"/api/batches/{batch_id}/cancel")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "cancelled"
        assert data["skipped"] == 2

        response = client.post(f"/api/batches/{batch_id}/cancel")
        assert response.status_code == 409

    def test_unknown_batch(self, client):
        """Test that unknown batch ids return 404."""
        assert client.get("/api/batches/does-not-exist").status_code == 404
        assert client.get("/api/batches/does-not-exist/items").status_code == 404
        assert client.get("/api/batches/does-not-exist/results").status_code == 404
        assert client.post("/api/batches/does-not-exist/cancel").status_code == 404

    def test_list_batches(self, client):
        """Test listing batches by owner."""
        _submit(client)
        _submit(client, owner_id="owner-2")

        response = client.get("/api/batches/", params={"owner_id": "owner-2"})
        assert response.status_code == 200
        assert [b["owner_id"] for b in response.json()] == ["owner-2"]


class TestQueueEndpoint:
    """Test queue status."""

    def test_queue_status(self, client):
        """Test queue depth after a submission."""
        _submit(client)
        data = client.get("/api/queue/status").json()
        assert data["queue"] == {"waiting": 2, "leased": 0}
        assert data["worker_pool"]["running"] is False


class TestConfigEndpoints:
    """Test configuration endpoints."""

    def test_get_and_update(self, client):
        """Test reading and changing a setting."""
        assert client.get("/api/config/MAX_ATTEMPTS").json()["value"] == 3

        response = client.put("/api/config/MAX_ATTEMPTS", json={"value": "4"})
        assert response.status_code == 200
        assert response.json()["value"] == 4

    def test_unknown_key(self, client):
        """Test that unknown settings return 404."""
        assert client.get("/api/config/NOPE").status_code == 404
        assert client.put("/api/config/NOPE", json={"value": "1"}).status_code == 404

    def test_rejects_wrong_type(self, client):
        """Test that a non-numeric value for a numeric setting is refused."""
        response = client.put("/api/config/MAX_ATTEMPTS", json={"value": "many"})
        assert response.status_code == 422
        assert client.put("/api/config/MAX_ATTEMPTS", json={"value": "-1"}).status_code == 422

    def test_engine_view(self, client):
        """Test the resolved engine settings."""
        client.put("/api/config/LEASE_DURATION_SECONDS", json={"value": "240"})
        data = client.get("/api/config/engine").json()
        assert data["lease_duration_seconds"] == 240
        assert data["max_attempts"] == 3

    def test_list_by_category(self, client):
        """Test listing one category."""
        data = client.get("/api/config/", params={"category": "retry"}).json()
        assert {c["key"] for c in data["configs"]} == {
            "MAX_ATTEMPTS", "RETRY_BASE_DELAY_SECONDS", "RETRY_MAX_DELAY_SECONDS"
        }
        assert "queue" in data["categories"]
