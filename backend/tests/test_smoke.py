"""Smoke test for scene presets through the public API."""

from fastapi.testclient import TestClient

from doppelganger.main import app


def test_scene_preset_smoke(make_user):
    subject = make_user("Host")
    guest = make_user("Guest")
    with TestClient(app) as client:
        created = client.post(
            "/api/v1/scenarios/coffee-shop-friends/simulations",
            json={"participants": [{"user_id": subject}, {"user_id": guest}]},
        )
        assert created.status_code == 200
        body = created.json()
        simulation_id = int(body["simulation"]["id"])
        assert body["simulation"]["mode"] == "pairwise"
        assert [item["name"] for item in body["simulation"]["items"]][0] == "Couch"

        ran = client.post(f"/api/v1/simulations/{simulation_id}/run")
        assert ran.status_code == 200
        assert ran.json()["status"] == "completed"

        state = client.get(f"/api/v1/simulations/{simulation_id}")
        assert state.status_code == 200
        assert state.json()["runs"][0]["scores"][0]["user_id"] == guest
