import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from room_reservations import ReservationYamlRepository, TimeWindow
from room_reservations.web_app import create_app

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _reserve_payload(**overrides):
    payload = {
        "userId": "alice",
        "building": "Library",
        "groupSize": 6,
        "startTime": "2026-03-02T10:00:00Z",
        "endTime": "2026-03-02T11:00:00Z",
    }
    payload.update(overrides)
    return payload


class TestWebApp(unittest.TestCase):
    def test_health(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            app = create_app(Path(temp_dir) / "data", now_provider=lambda: NOW)
            response = app.test_client().get("/")

            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.get_json()["service"], "room-reservations")
            self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")

    def test_reserve_then_get_and_list(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            app = create_app(Path(temp_dir) / "data", now_provider=lambda: NOW)
            client = app.test_client()

            response = client.post("/reserve", json=_reserve_payload(equipment=["projector"]))
            self.assertEqual(response.status_code, 200)
            payload = response.get_json()
            self.assertTrue(payload["available"])
            reservation = payload["reservation"]
            self.assertEqual(reservation["room"], "L202")
            self.assertEqual(reservation["status"], "CONFIRMED")
            self.assertEqual(reservation["equipment"], "projector")
            self.assertEqual(reservation["startTime"], "2026-03-02T10:00:00+00:00")
            self.assertEqual(reservation["createdAt"], "2026-03-01T09:00:00+00:00")

            fetched = client.get(f"/get?id={reservation['reservationId']}")
            self.assertEqual(fetched.status_code, 200)
            self.assertEqual(fetched.get_json()["reservation"]["reservationId"], reservation["reservationId"])

            listed = client.get("/list?userId=alice")
            self.assertEqual([item["reservationId"] for item in listed.get_json()["items"]], [reservation["reservationId"]])

            self.assertEqual(client.get("/get?id=missing").status_code, 404)
            self.assertEqual(client.get("/get").status_code, 400)

    def test_reserve_validation_errors(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            app = create_app(Path(temp_dir) / "data", now_provider=lambda: NOW)
            client = app.test_client()

            missing = client.post("/reserve", json={"userId": "alice"})
            self.assertEqual(missing.status_code, 400)

            zero = client.post("/reserve", json=_reserve_payload(groupSize=0))
            self.assertEqual(zero.status_code, 400)

            reversed_window = client.post(
                "/reserve",
                json=_reserve_payload(startTime="2026-03-02T11:00:00Z", endTime="2026-03-02T10:00:00Z"),
            )
            self.assertEqual(reversed_window.status_code, 400)
            self.assertFalse(reversed_window.get_json()["ok"])

    def test_no_room_is_a_normal_response(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            data_dir = Path(temp_dir) / "data"
            repo = ReservationYamlRepository(data_dir)
            window = TimeWindow(datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 11, 0))
            for room in repo.inventory.rooms_of("Library"):
                repo.commit("occupant", "Library", room.code, 1, window)

            app = create_app(data_dir, now_provider=lambda: NOW)
            client = app.test_client()

            strict = client.post("/reserve", json=_reserve_payload(strict=True))
            self.assertEqual(strict.status_code, 200)
            self.assertFalse(strict.get_json()["available"])

            relaxed = client.post("/reserve", json=_reserve_payload(strict=False))
            self.assertEqual(relaxed.get_json()["reservation"]["building"], "Engineering")

    def test_availability(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            app = create_app(Path(temp_dir) / "data", now_provider=lambda: NOW)
            client = app.test_client()
            query = "start=2026-03-02T10:00:00Z&end=2026-03-02T11:00:00Z"

            found = client.get(f"/availability?building=science&groupSize=6&strict=true&{query}")
            self.assertEqual(found.status_code, 200)
            self.assertEqual(
                found.get_json(),
                {"ok": True, "available": True, "building": "Science", "room": "S302", "capacity": 6},
            )

            unknown_strict = client.get(f"/availability?building=Gymnasium&groupSize=6&strict=true&{query}")
            self.assertFalse(unknown_strict.get_json()["available"])

            unknown_relaxed = client.get(f"/availability?building=Gymnasium&groupSize=6&{query}")
            self.assertEqual(unknown_relaxed.get_json()["building"], "Library")

            self.assertEqual(client.get(f"/availability?groupSize=0&{query}").status_code, 400)
            self.assertEqual(client.get("/availability?groupSize=4").status_code, 400)

    def test_update_routes_through_conflict_checks(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            app = create_app(Path(temp_dir) / "data", now_provider=lambda: NOW)
            client = app.test_client()
            first = client.post("/reserve", json=_reserve_payload(userId="alice", groupSize=4, strict=True)).get_json()
            client.post(
                "/reserve",
                json=_reserve_payload(
                    userId="bob",
                    groupSize=4,
                    strict=True,
                    startTime="2026-03-02T11:00:00Z",
                    endTime="2026-03-02T12:00:00Z",
                ),
            )
            reservation_id = first["reservation"]["reservationId"]

            conflict = client.post(
                "/update",
                json={"reservationId": reservation_id, "updates": {"room": "L201", "endTime": "2026-03-02T11:30:00Z"}},
            )
            self.assertEqual(conflict.status_code, 409)

            moved = client.post(
                "/update",
                json={"reservationId": reservation_id, "updates": {"endTime": "2026-03-02T11:30:00Z"}},
            )
            self.assertEqual(moved.status_code, 200)
            self.assertEqual(moved.get_json()["reservation"]["room"], "L202")

            rejected = client.post("/update", json={"reservationId": reservation_id, "updates": {"status": "X"}})
            self.assertEqual(rejected.status_code, 400)

            missing = client.post("/update", json={"reservationId": "missing", "updates": {"equipment": "tv"}})
            self.assertEqual(missing.status_code, 404)

    def test_cancel_flows(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            app = create_app(Path(temp_dir) / "data", now_provider=lambda: NOW)
            client = app.test_client()
            first = client.post("/reserve", json=_reserve_payload()).get_json()["reservation"]
            second = client.post(
                "/reserve",
                json=_reserve_payload(startTime="2026-03-03T10:00:00Z", endTime="2026-03-03T11:00:00Z"),
            ).get_json()["reservation"]

            upcoming = client.get("/reservations/upcoming?userId=alice&days=7").get_json()["items"]
            self.assertEqual([item["reservationId"] for item in upcoming], [first["reservationId"], second["reservationId"]])

            picked = client.post("/cancel/by-user", json={"userId": "alice", "pickIndex": 2})
            self.assertEqual(picked.status_code, 200)
            self.assertEqual(picked.get_json()["reservation"]["reservationId"], second["reservationId"])

            self.assertEqual(client.post("/cancel/by-user", json={"userId": "alice", "pickIndex": 0}).status_code, 400)
            self.assertEqual(client.post("/cancel/by-user", json={"userId": "alice", "pickIndex": 4}).status_code, 404)

            cancelled = client.post("/cancel", json={"reservationId": first["reservationId"]})
            self.assertEqual(cancelled.status_code, 200)
            self.assertTrue(cancelled.get_json()["deleted"])
            self.assertEqual(client.post("/cancel", json={"reservationId": first["reservationId"]}).status_code, 404)

            nothing_left = client.post("/cancel/by-user", json={"userId": "alice", "pickIndex": 1})
            self.assertFalse(nothing_left.get_json()["deleted"])

    def test_store_timeout_is_retryable_error(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            app = create_app(Path(temp_dir) / "data", now_provider=lambda: NOW, lock_timeout=0.05)
            client = app.test_client()
            repository = app.config["REPOSITORY"]

            with repository.room_lock(("Library", "L201")):
                response = client.post("/reserve", json=_reserve_payload(groupSize=4, strict=True))

            self.assertEqual(response.status_code, 503)
            self.assertTrue(response.get_json()["retryable"])
            self.assertEqual(repository.list_reservations("alice"), [])


if __name__ == "__main__":
    unittest.main()
