from fastapi.testclient import TestClient


def test_get_health(client: TestClient):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_worker_health_summary(client: TestClient, events):
    events.worker_health.return_value = [
        {"worker_id": "w1", "healthy": True, "state": "RUNNING"},
        {"worker_id": "w2", "healthy": False, "state": "RUNNING"},
    ]

    response = client.get("/api/v1/health/workers")

    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 2
    assert payload["healthy"] == 1
    assert [w["worker_id"] for w in payload["workers"]] == ["w1", "w2"]


def test_no_workers_reporting(client: TestClient, events):
    events.worker_health.return_value = []
    assert client.get("/api/v1/health/workers").json() == {"workers": [], "total": 0, "healthy": 0}
