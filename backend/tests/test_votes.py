"""Tests for event creation, the public view and voting.

Covers:
- Create: slug/admin token/links, validation errors, CREATED webhook
- Public view counts and quorum markers
- Vote upsert, replace-all semantics, created_at preservation
- Rejections: unknown slot (400), cancelled event (409), bad preference (422)
- Passive identity inheritance on vote
- Dashboard edit-in-place and one-time quorum alerts to the manager
- Quorum alerts wait until a manager is linked and the DM goes through
"""
from tabletop.models.event import Event
from tabletop.models.participant import Participant
from tabletop.models.vote import Vote
from tests.conftest import (
    admin_headers,
    cast_vote,
    connect_telegram,
    create_test_event,
    future_slots,
)


def _event(db, slug) -> Event:
    db.expire_all()
    return db.query(Event).filter(Event.slug == slug).first()


class TestCreateEvent:

    def test_create_returns_credentials_and_links(self, client):
        resp = client.post("/api/events", json={"title": "Catan", "timeSlots": future_slots(1)})
        assert resp.status_code == 201
        data = resp.json()
        assert len(data["slug"]) == 8 and data["slug"].isalnum()
        assert len(data["adminToken"]) == 36
        assert data["link"].endswith(f"/e/{data['slug']}")
        assert f"/api/event/{data['slug']}/auth?token=" in data["manageLink"]

    def test_admin_token_is_stored_hashed(self, client, db):
        created = create_test_event(client)
        row = _event(db, created["slug"])
        assert row.admin_token_hash != created["adminToken"]
        assert len(row.admin_token_hash) == 64

    def test_slots_required(self, client):
        resp = client.post("/api/events", json={"title": "Catan", "timeSlots": []})
        assert resp.status_code == 422

    def test_slot_must_end_after_start(self, client):
        slot = future_slots(1)[0]
        resp = client.post("/api/events", json={
            "title": "Catan",
            "timeSlots": [{"startTime": slot["endTime"], "endTime": slot["startTime"]}],
        })
        assert resp.status_code == 400

    def test_max_below_min_rejected(self, client):
        resp = client.post("/api/events", json={
            "title": "Catan", "minPlayers": 4, "maxPlayers": 3, "timeSlots": future_slots(1),
        })
        assert resp.status_code == 400
        assert "max_players" in resp.json()["detail"]

    def test_unknown_timezone_rejected(self, client):
        resp = client.post("/api/events", json={
            "title": "Catan", "timezone": "Mars/Olympus", "timeSlots": future_slots(1),
        })
        assert resp.status_code == 400

    def test_manager_handle_is_normalized(self, client, db):
        created = create_test_event(client, managerTelegram="  @GameMaster ")
        assert _event(db, created["slug"]).manager_telegram == "@gamemaster"

    def test_created_webhook_delivered(self, client, receiver):
        create_test_event(client, fromUrl="https://hooks.example.com/tabletop", fromUrlId="ext-42")
        assert len(receiver.payloads) == 1
        payload = receiver.payloads[0]
        assert payload["type"] == "CREATED"
        assert payload["fromUrlId"] == "ext-42"
        assert len(payload["timeSlots"]) == 2

    def test_no_webhook_without_from_url(self, client, receiver):
        create_test_event(client)
        assert receiver.requests == []


class TestEventView:

    def test_get_unknown_event(self, client):
        assert client.get("/api/event/nope1234").status_code == 404

    def test_counts_and_markers(self, client):
        created = create_test_event(client, minPlayers=2)
        cast_vote(client, created, "Alice", {0: ("YES", True), 1: "MAYBE"})
        cast_vote(client, created, "Bob", {0: "YES", 1: "NO"})

        view = client.get(f"/api/event/{created['slug']}").json()
        first, second = view["timeSlots"]
        assert (first["yesCount"], first["maybeCount"], first["noCount"]) == (2, 0, 0)
        assert first["viable"] and first["perfect"]
        assert (second["yesCount"], second["maybeCount"], second["noCount"]) == (0, 1, 1)
        assert not second["viable"]
        assert [p["name"] for p in view["participants"]] == ["Alice", "Bob"]
        assert view["status"] == "DRAFT"

    def test_validate_slugs(self, client):
        created = create_test_event(client)
        resp = client.post("/api/events/validate", json={"slugs": [created["slug"], "gone0000", created["slug"]]})
        assert resp.status_code == 200
        assert resp.json() == {"validSlugs": [created["slug"]]}


class TestVoting:

    def test_revote_updates_same_participant(self, client, db):
        created = create_test_event(client)
        pid = cast_vote(client, created, "Alice", {0: "YES", 1: "YES"})
        again = cast_vote(client, created, "Alice B.", {0: "NO"}, participantId=pid)
        assert again == pid

        db.expire_all()
        participant = db.get(Participant, pid)
        assert participant.name == "Alice B."
        assert [(v.time_slot_id, v.preference.value) for v in participant.votes] == [
            (created["timeSlots"][0]["id"], "NO"),
        ]

    def test_unchanged_vote_keeps_created_at(self, client, db):
        created = create_test_event(client)
        pid = cast_vote(client, created, "Alice", {0: "YES", 1: "MAYBE"})
        slot0 = created["timeSlots"][0]["id"]
        before = db.query(Vote).filter(Vote.participant_id == pid, Vote.time_slot_id == slot0).one().created_at

        cast_vote(client, created, "Alice", {0: "YES", 1: "YES"}, participantId=pid)
        db.expire_all()
        after = db.query(Vote).filter(Vote.participant_id == pid, Vote.time_slot_id == slot0).one().created_at
        assert after == before

    def test_participant_from_other_event_is_ignored(self, client):
        first = create_test_event(client, title="First")
        second = create_test_event(client, title="Second")
        pid = cast_vote(client, first, "Alice", {0: "YES"})
        other = cast_vote(client, second, "Alice", {0: "YES"}, participantId=pid)
        assert other != pid

    def test_unknown_slot_rejected(self, client):
        created = create_test_event(client)
        other = create_test_event(client, title="Other")
        resp = client.post(f"/api/event/{created['id']}/vote", json={
            "name": "Alice",
            "votes": [{"slotId": other["timeSlots"][0]["id"], "preference": "YES"}],
        })
        assert resp.status_code == 400

    def test_bad_preference_rejected(self, client):
        created = create_test_event(client)
        resp = client.post(f"/api/event/{created['id']}/vote", json={
            "name": "Alice",
            "votes": [{"slotId": created["timeSlots"][0]["id"], "preference": "SURE"}],
        })
        assert resp.status_code == 422

    def test_vote_on_cancelled_event_conflicts(self, client):
        created = create_test_event(client)
        assert client.post(f"/api/event/{created['slug']}/cancel", headers=admin_headers(created)).status_code == 200
        resp = client.post(f"/api/event/{created['id']}/vote", json={
            "name": "Alice",
            "votes": [{"slotId": created["timeSlots"][0]["id"], "preference": "YES"}],
        })
        assert resp.status_code == 409

    def test_vote_on_missing_event(self, client):
        resp = client.post("/api/event/99999/vote", json={"name": "Alice", "votes": []})
        assert resp.status_code == 404

    def test_handle_inherits_known_chat_id(self, client, db):
        first = create_test_event(client, title="First")
        pid = cast_vote(client, first, "Alice", {0: "YES"}, telegramId="@Alice")
        db.get(Participant, pid).chat_id = "777"
        db.commit()

        second = create_test_event(client, title="Second")
        new_pid = cast_vote(client, second, "Alice", {0: "YES"}, telegramId="alice")
        db.expire_all()
        participant = db.get(Participant, new_pid)
        assert participant.telegram_id == "@alice"
        assert participant.chat_id == "777"


class TestDashboardOnVote:

    def test_successive_votes_keep_one_dashboard(self, client, db, surfaces):
        created = create_test_event(client)
        connect_telegram(db, created["slug"], "-1001")

        cast_vote(client, created, "Alice", {0: "YES"})
        cast_vote(client, created, "Bob", {0: "YES"})

        telegram = surfaces["telegram"]
        dashboard_id = _event(db, created["slug"]).telegram_message_id
        assert dashboard_id is not None
        assert telegram.pinned == [("-1001", dashboard_id)]
        assert [mid for _, mid, _ in telegram.edits] == [dashboard_id]
        assert "Participants:</b> 2" in telegram.edits[-1][2]

    def test_activity_notice_broadcast(self, client, db, surfaces):
        created = create_test_event(client)
        connect_telegram(db, created["slug"], "-1001")
        cast_vote(client, created, "<Alice>", {0: "YES"})
        assert any("&lt;Alice&gt;</b> just updated" in text for text in surfaces["telegram"].texts_to("-1001"))

    def test_chat_outage_does_not_fail_vote(self, client, db, surfaces):
        created = create_test_event(client)
        connect_telegram(db, created["slug"], "-1001")
        surfaces["telegram"].down = True
        cast_vote(client, created, "Alice", {0: "YES"})
        assert _event(db, created["slug"]).telegram_message_id is None


class TestQuorumAlerts:

    def test_alerts_fire_once_each(self, client, db, surfaces):
        created = create_test_event(client, minPlayers=2)
        row = _event(db, created["slug"])
        row.manager_chat_id = "555"
        db.commit()
        telegram = surfaces["telegram"]

        cast_vote(client, created, "Alice", {0: "YES"})
        assert telegram.texts_to("dm-555") == []

        cast_vote(client, created, "Bob", {0: "YES"})
        carol = cast_vote(client, created, "Carol", {0: "MAYBE"})
        dms = telegram.texts_to("dm-555")
        assert len(dms) == 1 and "Viable Quorum" in dms[0]

        cast_vote(client, created, "Carol", {0: ("YES", True)}, participantId=carol)
        dms = telegram.texts_to("dm-555")
        assert len(dms) == 2 and "Perfect Match" in dms[1]

        # Dropping back to merely viable stays silent
        cast_vote(client, created, "Dave", {0: "NO"})
        assert len(telegram.texts_to("dm-555")) == 2

        row = _event(db, created["slug"])
        assert row.quorum_viable_notified and row.quorum_perfect_notified

    def test_alert_waits_for_manager_link(self, client, db, surfaces):
        created = create_test_event(client, minPlayers=2)
        cast_vote(client, created, "Alice", {0: "YES"})
        cast_vote(client, created, "Bob", {0: "YES"})
        row = _event(db, created["slug"])
        assert row.quorum_viable_notified is False

        row.manager_chat_id = "555"
        db.commit()
        cast_vote(client, created, "Carol", {0: "MAYBE"})
        dms = surfaces["telegram"].texts_to("dm-555")
        assert len(dms) == 1 and "Viable Quorum" in dms[0]
        assert _event(db, created["slug"]).quorum_viable_notified is True

    def test_undelivered_alert_is_retried(self, client, db, surfaces):
        created = create_test_event(client, minPlayers=2)
        row = _event(db, created["slug"])
        row.manager_chat_id = "555"
        db.commit()
        telegram = surfaces["telegram"]

        telegram.down = True
        cast_vote(client, created, "Alice", {0: "YES"})
        cast_vote(client, created, "Bob", {0: "YES"})
        assert _event(db, created["slug"]).quorum_viable_notified is False

        telegram.down = False
        cast_vote(client, created, "Carol", {0: "NO"})
        assert len(telegram.texts_to("dm-555")) == 1
        assert _event(db, created["slug"]).quorum_viable_notified is True

    def test_reminder_update_leaves_flags_alone(self, client, db):
        created = create_test_event(client, minPlayers=1)
        row = _event(db, created["slug"])
        row.manager_chat_id = "555"
        db.commit()
        cast_vote(client, created, "Alice", {0: "YES"})
        resp = client.put(
            f"/api/event/{created['slug']}/reminders",
            json={"enabled": True, "reminderTime": "18:30", "reminderDays": [1, 3]},
            headers=admin_headers(created),
        )
        assert resp.status_code == 200
        row = _event(db, created["slug"])
        assert row.quorum_viable_notified is True
        assert row.reminder_days == "1,3"
