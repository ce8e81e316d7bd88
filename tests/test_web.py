import pytest

NAMES = ["ann adams", "bob brown", "cat cole", "dan dunn"]


async def create_tournament(client, **fields):
    fields.setdefault("name", "Friday Darts")
    resp = await client.post("/api/tournaments", json=fields)
    assert resp.status == 201
    return await resp.json()


async def add_players(client, tournament, names=NAMES, check_in=True):
    players = []
    for name in names:
        resp = await client.post(
            f"/api/tournaments/{tournament['id']}/players",
            json={"name": name, "email": f"{name.split()[0]}@example.com"},
        )
        assert resp.status == 201
        player = await resp.json()
        if check_in:
            resp = await client.post(f"/api/players/{player['id']}/check-in", json={})
            player = await resp.json()
        players.append(player)
    return players


async def draw_one_group(client, tournament):
    resp = await client.post(
        f"/api/tournaments/{tournament['id']}/groups",
        json={"num_groups": 1, "total_boards": 2, "shuffle": False},
    )
    assert resp.status == 201
    return await resp.json()


async def score(client, match_id, legs1, legs2, **extra):
    resp = await client.post(
        f"/api/matches/{match_id}/score",
        json={"player1_legs": legs1, "player2_legs": legs2, **extra},
    )
    assert resp.status == 200
    return await resp.json()


async def test_tournament_from_registration_to_champion(desk_client):
    tournament = await create_tournament(desk_client, date="2026-03-14")
    tid = tournament["id"]
    players = await add_players(desk_client, tournament)

    assert [p["name"] for p in players] == ["Ann Adams", "Bob Brown", "Cat Cole", "Dan Dunn"]
    assert all(p["checked_in"] for p in players)

    resp = await desk_client.post(
        f"/api/tournaments/{tid}/groups/preview", json={"num_groups": 2, "total_boards": 4}
    )
    preview = await resp.json()
    assert preview["group_sizes"] == [2, 2]
    assert [g["board_numbers"] for g in preview["groups"]] == [[1, 2], [3, 4]]

    [group] = await draw_one_group(desk_client, tournament)
    assert group["board_numbers"] == [1, 2]

    groups = await (await desk_client.get(f"/api/tournaments/{tid}/groups")).json()
    assert len(groups[0]["players"]) == 4

    matches = await (await desk_client.get(f"/api/tournaments/{tid}/matches?stage=group")).json()
    assert len(matches) == 6

    # Earlier registered players win 3-1
    order = {p["id"]: i for i, p in enumerate(players)}
    for match in matches:
        if order[match["player1_id"]] < order[match["player2_id"]]:
            body = await score(desk_client, match["id"], 3, 1)
        else:
            body = await score(desk_client, match["id"], 1, 3)
        assert body["match"]["status"] == "completed"
        assert body["next_match"] is None

    history = await (await desk_client.get(f"/api/matches/{matches[0]['id']}/history")).json()
    assert len(history) == 1
    assert history[0]["new_status"] == "completed"

    [table] = await (await desk_client.get(f"/api/tournaments/{tid}/standings")).json()
    assert [s["player_name"] for s in table["standings"]] == [
        "Ann Adams",
        "Bob Brown",
        "Cat Cole",
        "Dan Dunn",
    ]
    assert table["standings"][0]["points"] == 6
    assert table["advancing_count"] == 2

    resp = await desk_client.post(f"/api/tournaments/{tid}/knockout")
    assert resp.status == 400

    resp = await desk_client.post(f"/api/tournaments/{tid}/group-stage/complete", json={})
    assert (await resp.json())["group_stage_completed"] is True

    resp = await desk_client.post(f"/api/tournaments/{tid}/knockout")
    assert resp.status == 201
    bracket = await resp.json()
    assert bracket["champion"] is None

    [final_round] = await (await desk_client.get(f"/api/tournaments/{tid}/knockout")).json()
    assert final_round["name"] == "Final"
    [final] = final_round["matches"]
    await score(desk_client, final["id"], 3, 2)

    tournament = await (await desk_client.get(f"/api/tournaments/{tid}")).json()
    assert tournament["status"] == "completed"

    resp = await desk_client.get("/")
    assert resp.status == 200
    assert "Friday Darts" in await resp.text()

    resp = await desk_client.get(f"/tournaments/{tid}")
    assert resp.status == 200
    page = await resp.text()
    assert "Group A" in page
    assert "Ann Adams" in page
    assert "Final" in page


async def test_self_registration(desk_client, transport):
    tournament = await create_tournament(desk_client, start_time="19:30")
    url = f"/api/tournaments/{tournament['id']}/register"

    resp = await desk_client.post(url, json={"name": "eve", "email": "eve@example.com"})
    assert resp.status == 400
    assert "closed" in (await resp.json())["error"]

    await desk_client.patch(
        f"/api/tournaments/{tournament['id']}", json={"registration_enabled": True}
    )
    resp = await desk_client.post(
        url, json={"name": "mary-jane o'brien", "email": "mj@example.com"}
    )
    assert resp.status == 201
    player = await resp.json()
    assert player["name"] == "Mary-Jane O'Brien"
    assert player["checked_in"] is False

    to, subject, _ = transport.send.await_args.args
    assert to == "mj@example.com"
    assert subject == "Registration Confirmed - Friday Darts"

    resp = await desk_client.post(url, json={"name": "  "})
    assert resp.status == 400


async def test_duplicate_names_rejected(desk_client, transport):
    tournament = await create_tournament(desk_client, registration_enabled=True)
    await add_players(desk_client, tournament, ["ann adams"], check_in=False)

    resp = await desk_client.post(
        f"/api/tournaments/{tournament['id']}/players", json={"name": "ANN ADAMS"}
    )
    assert resp.status == 400
    assert (await resp.json())["error"] == 'Player "Ann Adams" already exists in this tournament'

    resp = await desk_client.post(
        f"/api/tournaments/{tournament['id']}/register",
        json={"name": "ann adams ", "email": "other@example.com"},
    )
    assert resp.status == 400
    transport.send.assert_not_awaited()

    players = await (await desk_client.get(f"/api/tournaments/{tournament['id']}/players")).json()
    assert len(players) == 1


async def test_doubles_teams(desk_client, transport):
    tournament = await create_tournament(
        desk_client, game_type="doubles", registration_enabled=True
    )
    tid = tournament["id"]

    resp = await desk_client.post(
        f"/api/tournaments/{tid}/players",
        json={
            "players": [
                {"name": "ann adams", "email": "ann@example.com"},
                {"name": "bob brown"},
            ]
        },
    )
    assert resp.status == 201
    ann, bob = await resp.json()
    assert (ann["name"], bob["name"]) == ("Ann Adams", "Bob Brown")
    assert ann["team_id"] and ann["team_id"] == bob["team_id"]
    transport.send.assert_not_awaited()

    resp = await desk_client.post(f"/api/tournaments/{tid}/register", json={"name": "cat cole"})
    assert resp.status == 400

    resp = await desk_client.post(
        f"/api/tournaments/{tid}/register",
        json={
            "name": "cat cole",
            "email": "cat@example.com",
            "player2_name": "dan dunn",
            "player2_email": "dan@example.com",
        },
    )
    assert resp.status == 201
    cat, dan = await resp.json()
    assert cat["team_id"] == dan["team_id"] != ann["team_id"]
    assert sorted(call.args[0] for call in transport.send.await_args_list) == [
        "cat@example.com",
        "dan@example.com",
    ]

    await desk_client.patch(f"/api/players/{ann['id']}", json={"paid": True})
    players = await (await desk_client.get(f"/api/tournaments/{tid}/players")).json()
    assert {p["name"]: p["paid"] for p in players} == {
        "Ann Adams": True,
        "Bob Brown": True,
        "Cat Cole": False,
        "Dan Dunn": False,
    }

    for player in players:
        await desk_client.post(f"/api/players/{player['id']}/check-in", json={})
    resp = await desk_client.post(
        f"/api/tournaments/{tid}/groups/preview", json={"num_groups": 1, "total_boards": 1}
    )
    assert (await resp.json())["group_sizes"] == [2]

    [group] = await draw_one_group(desk_client, tournament)
    groups = await (await desk_client.get(f"/api/tournaments/{tid}/groups")).json()
    assert len(groups[0]["players"]) == 4

    [match] = await (await desk_client.get(f"/api/tournaments/{tid}/matches")).json()
    assert {match["player1_id"], match["player2_id"]} == {ann["id"], cat["id"]}

    [table] = await (await desk_client.get(f"/api/tournaments/{tid}/standings")).json()
    assert [s["player_name"] for s in table["standings"]] == [
        "Ann Adams & Bob Brown",
        "Cat Cole & Dan Dunn",
    ]


async def test_score_needs_both_leg_counts(desk, desk_client):
    tournament = await create_tournament(desk_client)
    await add_players(desk_client, tournament, ["ann", "bob"])
    await draw_one_group(desk_client, tournament)
    [match] = await desk.db.list_matches(tournament["id"])

    for body in ({}, {"player1_legs": 3}, {"player2_legs": 3}):
        resp = await desk_client.post(f"/api/matches/{match['id']}/score", json=body)
        assert resp.status == 400

    assert await desk.db.score_history(match["id"]) == []
    assert (await desk.db.get_match(match["id"]))["status"] == "scheduled"


async def test_check_in_toggles(desk_client):
    tournament = await create_tournament(desk_client)
    [player] = await add_players(desk_client, tournament, ["ann"], check_in=False)
    url = f"/api/players/{player['id']}/check-in"

    assert (await (await desk_client.post(url, json={})).json())["checked_in"] is True
    assert (await (await desk_client.post(url, json={})).json())["checked_in"] is False
    assert (
        await (await desk_client.post(url, json={"checked_in": True})).json()
    )["checked_in"] is True
    assert (await desk_client.post(url, json={"checked_in": "yes"})).status == 400


async def test_player_edit_and_delete(desk_client):
    tournament = await create_tournament(desk_client)
    [player] = await add_players(desk_client, tournament, ["ann"])

    resp = await desk_client.patch(
        f"/api/players/{player['id']}", json={"name": "ann adams", "paid": True}
    )
    updated = await resp.json()
    assert updated["name"] == "Ann Adams"
    assert updated["paid"] is True

    resp = await desk_client.delete(f"/api/players/{player['id']}")
    assert (await resp.json()) == {"success": True}
    players = await (await desk_client.get(f"/api/tournaments/{tournament['id']}/players")).json()
    assert players == []


async def test_board_calls_follow_scores(desk_client, transport):
    tournament = await create_tournament(desk_client)
    await add_players(desk_client, tournament)
    await draw_one_group(desk_client, tournament)

    resp = await desk_client.post(f"/api/tournaments/{tournament['id']}/board-calls")
    body = await resp.json()
    assert sorted(m["board_number"] for m in body["matches"]) == [1, 2]
    assert transport.send.await_count == 4

    board1 = next(m for m in body["matches"] if m["board_number"] == 1)
    result = await score(desk_client, board1["id"], 3, 0)

    assert result["next_match"]["board_number"] == 1
    assert result["next_match"]["round_number"] == 2
    assert result["next_match"]["status"] == "in-progress"
    assert transport.send.await_count == 6


async def test_group_emails(desk_client, transport):
    tournament = await create_tournament(desk_client)
    await add_players(desk_client, tournament)
    await draw_one_group(desk_client, tournament)

    resp = await desk_client.post(f"/api/tournaments/{tournament['id']}/groups/emails")

    assert await resp.json() == {"sent": 4, "failed": 0, "errors": []}
    assert transport.send.await_count == 4


async def test_scoring_settings(desk_client):
    tournament = await create_tournament(desk_client)
    url = f"/api/tournaments/{tournament['id']}/scoring"

    scoring = await (await desk_client.get(url)).json()
    assert scoring["points_for_win"] == 2
    assert scoring["tiebreak_order"] == ["head_to_head", "leg_difference", "legs_won"]

    resp = await desk_client.put(url, json={"points_for_win": 3, "roundrobin_legs_per_match": 5})
    scoring = await resp.json()
    assert scoring["points_for_win"] == 3
    assert scoring["roundrobin_legs_per_match"] == 5

    resp = await desk_client.put(url, json={"primary_metric": "style_points"})
    assert resp.status == 400


@pytest.mark.parametrize(
    "edit, expected",
    [
        (
            {"action": "add", "rule": "legs_lost"},
            ["head_to_head", "leg_difference", "legs_won", "legs_lost"],
        ),
        ({"action": "remove", "index": 0}, ["leg_difference", "legs_won"]),
        (
            {"action": "move", "index": 1, "offset": -1},
            ["leg_difference", "head_to_head", "legs_won"],
        ),
    ],
)
async def test_tiebreaker_edits(desk_client, edit, expected):
    tournament = await create_tournament(desk_client)

    resp = await desk_client.post(
        f"/api/tournaments/{tournament['id']}/scoring/tiebreakers", json=edit
    )

    assert resp.status == 200
    assert (await resp.json())["tiebreak_order"] == expected


@pytest.mark.parametrize(
    "edit",
    [
        {"action": "add", "rule": "coin_toss"},
        {"action": "move", "index": 0, "offset": 2},
        {"action": "remove"},
        {"action": "shuffle"},
    ],
)
async def test_bad_tiebreaker_edits(desk_client, edit):
    tournament = await create_tournament(desk_client)

    resp = await desk_client.post(
        f"/api/tournaments/{tournament['id']}/scoring/tiebreakers", json=edit
    )

    assert resp.status == 400


async def test_dartconnect_result_review(desk, desk_client):
    tournament = await create_tournament(desk_client)
    await add_players(desk_client, tournament, ["ann", "bob"])
    await draw_one_group(desk_client, tournament)
    [match] = await desk.db.list_matches(tournament["id"])
    names = {p["id"]: p["name"] for p in await desk.db.list_players(tournament["id"])}
    await desk.db.create_session("ABC123", tournament["id"])
    result = await desk.db.create_pending_result(
        {
            "tournament_id": tournament["id"],
            "match_id": match["id"],
            "watch_code": "ABC123",
            "player1_name": names[match["player1_id"]],
            "player2_name": names[match["player2_id"]],
            "player1_legs": 3,
            "player2_legs": 0,
            "winner_name": names[match["player1_id"]],
            "confidence_score": 100.0,
            "match_found": True,
            "swapped": False,
            "status": "pending",
        }
    )

    url = f"/api/tournaments/{tournament['id']}/results"
    pending = await (await desk_client.get(f"{url}?status=pending")).json()
    assert [r["id"] for r in pending] == [result["id"]]

    resp = await desk_client.post(
        f"/api/results/{result['id']}/approve", json={"processed_by": "desk"}
    )
    body = await resp.json()
    assert body["match"]["status"] == "completed"
    assert (body["match"]["player1_legs"], body["match"]["player2_legs"]) == (3, 0)
    assert body["match"]["winner_id"] == match["player1_id"]

    resp = await desk_client.post(f"/api/results/{result['id']}/reject", json={})
    assert resp.status == 400

    sessions = await (
        await desk_client.get(f"/api/tournaments/{tournament['id']}/scraper-sessions")
    ).json()
    assert [s["watch_code"] for s in sessions] == ["ABC123"]


async def test_not_found_is_json(desk_client):
    resp = await desk_client.get("/api/tournaments/missing")
    assert resp.status == 404
    assert "missing" in (await resp.json())["error"]

    resp = await desk_client.get("/no/such/page")
    assert resp.status == 404
    assert await resp.json() == {"error": "Not found"}

    resp = await desk_client.post(
        "/api/matches/missing/score", json={"player1_legs": 1, "player2_legs": 0}
    )
    assert resp.status == 404


async def test_bad_requests(desk_client):
    resp = await desk_client.post("/api/tournaments", json={"location": "Club"})
    assert resp.status == 400

    resp = await desk_client.post("/api/tournaments", data="[1, 2]")
    assert resp.status == 400

    tournament = await create_tournament(desk_client)
    resp = await desk_client.post(
        f"/api/tournaments/{tournament['id']}/groups/preview", json={"num_groups": "two"}
    )
    assert resp.status == 400


async def test_display_page(desk_client):
    resp = await desk_client.get("/display/ABC123")

    assert resp.status == 200
    page = await resp.text()
    assert "Live: ABC123" in page
    assert "match-ABC123" in page
