"""REST surface: configure, run, inspect, score and step."""

from fastapi.testclient import TestClient

from doppelganger.main import app


def test_create_run_and_inspect_simulation(make_user):
    user_a = make_user("UserA")
    user_b = make_user("UserB")
    with TestClient(app) as client:
        created = client.post(
            "/api/v1/simulations",
            json={
                "name": "Couch chat",
                "goal": "find a friend",
                "participants": [{"user_id": user_a}, {"user_id": user_b}],
                "items": [{"name": "Couch", "x": 200, "y": 150}],
                "repetitions": 1,
            },
        )
        assert created.status_code == 200
        body = created.json()
        sim_id = body["simulation"]["id"]
        assert body["simulation"]["status"] == "pending"
        assert [p["role"] for p in body["participants"]] == ["agent1", "agent2"]
        assert len(body["runs"]) == 1

        ran = client.post(f"/api/v1/simulations/{sim_id}/run")
        assert ran.status_code == 200
        assert ran.json()["status"] == "completed"

        status = client.get(f"/api/v1/simulations/{sim_id}/status").json()
        assert status["status"] == "completed"
        assert status["completed_runs"] == status["total_runs"] == 1

        run = client.get(f"/api/v1/simulations/{sim_id}/runs/0").json()
        indices = [s["state_index"] for s in run["snapshots"]]
        assert indices == list(range(len(indices)))
        assert run["run"]["status"] == "completed"
        assert [score["user_id"] for score in run["run"]["scores"]] == [user_b]

        again = client.post(f"/api/v1/simulations/{sim_id}/run")
        assert again.status_code == 409


def test_configuration_errors_map_to_http_status(make_user):
    user_a = make_user("UserA")
    user_b = make_user("UserB")
    with TestClient(app) as client:
        missing = client.post(
            "/api/v1/simulations",
            json={"participants": [{"user_id": user_a}, {"user_id": 4242}]},
        )
        assert missing.status_code == 404

        duplicate_items = client.post(
            "/api/v1/simulations",
            json={
                "participants": [{"user_id": user_a}, {"user_id": user_b}],
                "items": [{"name": "Bar", "x": 10, "y": 10}, {"name": "bar", "x": 20, "y": 20}],
            },
        )
        assert duplicate_items.status_code == 422

        off_board = client.post(
            "/api/v1/simulations",
            json={
                "participants": [{"user_id": user_a}, {"user_id": user_b}],
                "items": [{"name": "Roof", "x": 10, "y": 900}],
            },
        )
        assert off_board.status_code == 422

        alone = client.post("/api/v1/simulations", json={"participants": [{"user_id": user_a}]})
        assert alone.status_code == 422

        assert client.get("/api/v1/simulations/999").status_code == 404
        assert client.get("/api/v1/simulations/999/status").status_code == 404


def test_score_endpoint_ranks_and_validates(make_user):
    subject = make_user("Sam", profile={"gender_identity": "man", "sexual_orientation": "straight"})
    man = make_user("Tom", profile={"gender_identity": "man", "sexual_orientation": "straight"})
    woman = make_user("Uma", profile={"gender_identity": "woman", "sexual_orientation": "straight"})
    with TestClient(app) as client:
        scored = client.post(
            "/api/v1/simulations/score",
            json={
                "goal": "find a romantic partner",
                "subject_user_id": subject,
                "pairings": [
                    {"user_id": man, "transcript": "SamBit: Hi\nTomBit: Hello"},
                    {"user_id": woman, "transcript": "SamBit: Hi\nUmaBit: Hello there"},
                ],
            },
        )
        assert scored.status_code == 200
        scores = scored.json()["scores"]
        assert [s["rank"] for s in scores] == [1, 2]
        assert scores[0]["user_id"] == woman
        assert scores[1]["dealbreaker"] is True
        assert scores[1]["score"] <= 10

        no_goal = client.post(
            "/api/v1/simulations/score",
            json={"goal": " ", "subject_user_id": subject, "pairings": [{"user_id": man, "transcript": "x"}]},
        )
        assert no_goal.status_code == 400

        no_pairings = client.post(
            "/api/v1/simulations/score",
            json={"goal": "find a friend", "subject_user_id": subject, "pairings": []},
        )
        assert no_pairings.status_code == 400


def test_step_endpoint_runs_single_round(make_user):
    user_a = make_user("UserA")
    user_b = make_user("UserB")
    with TestClient(app) as client:
        stepped = client.post(
            "/api/v1/simulations/step",
            json={
                "agents": [
                    {"user_id": user_a, "role": "agent1", "x": 100, "y": 100},
                    {"user_id": user_b, "role": "agent2", "x": 500, "y": 300},
                ],
                "items": [{"name": "Couch", "x": 200, "y": 150}],
                "history": "",
                "goal": "find a friend",
            },
        )
        assert stepped.status_code == 200
        body = stepped.json()
        assert [t["agent_name"] for t in body["turns"]] == ["UserABit", "UserBBit"]
        assert body["done"] is False
        assert "UserABit:" in body["history"]

        closing = client.post(
            "/api/v1/simulations/step",
            json={
                "agents": [{"user_id": user_a, "role": "agent1"}, {"user_id": user_b, "role": "agent2"}],
                "history": body["history"],
                "goal": "find a friend",
                "round_number": 3,
            },
        )
        assert closing.status_code == 200
        assert closing.json()["done"] is True
        assert len(closing.json()["turns"]) == 1


def test_identities_and_scenarios(make_user):
    make_user("Trained")
    make_user("Fresh", trained=False)
    with TestClient(app) as client:
        identities = client.get("/api/v1/identities").json()
        assert [i["name"] for i in identities] == ["Trained"]

        scenarios = client.get("/api/v1/scenarios").json()
        ids = {s["id"] for s in scenarios}
        assert {"coffee-shop-friends", "candlelit-restaurant-date", "hackathon-teammates"} <= ids

        missing = client.post(
            "/api/v1/scenarios/nope/simulations",
            json={"participants": [{"user_id": 1}, {"user_id": 2}]},
        )
        assert missing.status_code == 404
