import logging

import pytest
from fastapi.testclient import TestClient

from geosearch.logging import configure_logging, redact_api_keys
from geosearch.main import create_app


@pytest.fixture
def client(orchestrator):
    return TestClient(create_app(orchestrator=orchestrator))


def test_redact_api_keys_masks_provider_urls():
    event = {
        "event": "distance_matrix_batch_failed",
        "error": "Server error '500' for url 'https://maps.test/json?origins=1,2&key=AIzaSecret&mode=driving'",
        "batch": 1,
    }

    redacted = redact_api_keys(None, "warning", event)

    assert "AIzaSecret" not in redacted["error"]
    assert "key=***&mode=driving" in redacted["error"]
    assert redacted["batch"] == 1


def test_redact_api_keys_leaves_other_values_alone():
    event = {"event": "search_completed", "query": "monkey bars"}
    assert redact_api_keys(None, "info", dict(event)) == event


@pytest.mark.parametrize("level,expected", [("DEBUG", logging.WARNING), ("error", logging.ERROR)])
def test_configure_logging_keeps_http_client_quiet(level, expected):
    configure_logging(env="production", level=level)

    assert logging.getLogger("httpx").level == expected
    assert logging.getLogger("httpcore").level == expected
    assert logging.getLogger("uvicorn.access").propagate is True


def test_request_id_is_generated_and_echoed(client):
    response = client.get("/health")

    assert len(response.headers["X-Request-ID"]) == 32
    assert float(response.headers["X-Response-Time-Ms"]) >= 0


def test_upstream_request_id_is_honoured(client):
    response = client.post(
        "/api/search",
        json={"location": {"lat": 12.9716, "lng": 77.5946}},
        headers={"X-Request-ID": "trace-123"},
    )

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "trace-123"
