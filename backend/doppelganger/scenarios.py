"""Built-in scene presets: board items plus a goal for common meetups."""

from typing import Any


SCENARIO_LIBRARY: list[dict[str, Any]] = [
    {
        "id": "coffee-shop-friends",
        "title": "Coffee Shop Meetup",
        "description": "A relaxed afternoon in a neighbourhood cafe. Good for finding new friends.",
        "goal": "Find a friend to hang out with on weekends.",
        "mode": "pairwise",
        "repetitions": 1,
        "items": [
            {"name": "Couch", "x": 200, "y": 150},
            {"name": "Counter", "x": 450, "y": 80},
            {"name": "Bookshelf", "x": 520, "y": 320},
        ],
    },
    {
        "id": "candlelit-restaurant-date",
        "title": "Candle-lit Restaurant",
        "description": "A quiet dinner table for two. Used for romantic compatibility runs.",
        "goal": "Find a romantic partner for a long-term relationship.",
        "mode": "pairwise",
        "repetitions": 2,
        "items": [
            {"name": "Table", "x": 300, "y": 200},
            {"name": "Bar", "x": 90, "y": 90},
            {"name": "Terrace", "x": 520, "y": 60},
        ],
    },
    {
        "id": "hackathon-teammates",
        "title": "Hackathon Hall",
        "description": "A busy hall at the start of a weekend hackathon with several people looking for a team.",
        "goal": "Find teammates for a weekend hackathon project.",
        "mode": "group",
        "repetitions": 1,
        "items": [
            {"name": "Whiteboard", "x": 120, "y": 100},
            {"name": "Snack Table", "x": 480, "y": 300},
            {"name": "Stage", "x": 300, "y": 40},
        ],
    },
]


def list_scenarios() -> list[dict[str, Any]]:
    return [dict(item) for item in SCENARIO_LIBRARY]


def get_scenario(scenario_id: str) -> dict[str, Any] | None:
    for item in SCENARIO_LIBRARY:
        if item["id"] == scenario_id:
            return dict(item)
    return None
