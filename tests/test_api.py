"""End-to-end tests for the UI-facing HTTP bridge."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from conftest import TODAY, instant_config
from coursesync.api import create_app
from coursesync.models import Collection, Snapshot, WriteOp
from coursesync.remote import InMemoryRecordStore
from coursesync.seed import seed_snapshot
from coursesync.service import TrainingService


class TrainingApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.store = InMemoryRecordStore(seed_snapshot(TODAY))
        self.service = TrainingService(
            self.store,
            config=instant_config(Path(self._tempdir.name)),
            today=lambda: TODAY,
        )
        self.app = create_app(self.service)

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def _login(self, client: TestClient, username: str, password: str) -> None:
        response = client.post("/session/login", json={"username": username, "password": password})
        self.assertEqual(response.status_code, 200, response.text)

    def test_status_and_snapshot_hide_passwords(self) -> None:
        with TestClient(self.app) as client:
            status = client.get("/status")
            self.assertEqual(status.status_code, 200, status.text)
            self.assertTrue(status.json()["connected"])
            self.assertIsNone(status.json()["signed_in"])

            snapshot = client.get("/snapshot").json()
            self.assertEqual(len(snapshot["users"]), 7)
            self.assertTrue(all("password" not in user for user in snapshot["users"]))

            catalog = client.get("/catalog").json()
            self.assertEqual([course["id"] for course in catalog["courses"]], ["c1", "c2"])

            queue = client.get("/approvals/courses").json()["courses"]
            self.assertEqual({course["statusLabel"] for course in queue}, {"Awaiting approval"})

    def test_login_failures_map_to_http_errors(self) -> None:
        with TestClient(self.app) as client:
            wrong = client.post("/session/login", json={"username": "admin", "password": "nope"})
            self.assertEqual(wrong.status_code, 401)

            mine = client.get("/registrations/mine")
            self.assertEqual(mine.status_code, 401)

            invalid = client.post("/session/login", json={"username": "", "password": "x"})
            self.assertEqual(invalid.status_code, 422)

    def test_course_lifecycle_through_http(self) -> None:
        with TestClient(self.app) as client:
            self._login(client, "trainer_bac", "password")

            created = client.post(
                "/courses",
                json={"title": "Kỹ năng thuyết trình", "start_date": "2026-04-20", "format": "Offline"},
            )
            self.assertEqual(created.status_code, 200, created.text)
            self.assertTrue(created.json()["ok"])
            course = next(
                item for item in client.get("/snapshot").json()["courses"] if item["title"] == "Kỹ năng thuyết trình"
            )
            self.assertEqual(course["approvalStatus"], "trainer_approved")

            forbidden = client.post(f"/courses/{course['id']}/decision", json={"approve": True})
            self.assertEqual(forbidden.status_code, 403)

            client.post("/session/logout")
            self._login(client, "ka_manager", "password")
            decided = client.post(f"/courses/{course['id']}/decision", json={"approve": True})
            self.assertEqual(decided.status_code, 200, decided.text)

            again = client.post(f"/courses/{course['id']}/decision", json={"approve": False})
            self.assertEqual(again.status_code, 409)

            missing = client.put("/courses/nope", json={"title": "x"})
            self.assertEqual(missing.status_code, 404)

    def test_registration_requests_and_failed_writes(self) -> None:
        with TestClient(self.app) as client:
            self._login(client, "asm_hcm", "password")

            submitted = client.post("/registrations", json={"course_ids": ["c1", "c2"]})
            self.assertEqual(submitted.status_code, 200, submitted.text)
            self.assertEqual(submitted.json()["written"], 2)

            mine = client.get("/registrations/mine").json()["registrations"]
            self.assertEqual({view["course"]["id"] for view in mine}, {"c1", "c2", "c3"})

            cancelled = client.delete("/registrations/r_mock_3")
            self.assertEqual(cancelled.status_code, 200)
            self.assertEqual(cancelled.json()["attempted"], 0)

            self.store.fail_writes(Collection.REGISTRATIONS, WriteOp.DELETE)
            failed = client.delete("/registrations/r_mock_3", params={"confirm": "true"})
            self.assertEqual(failed.status_code, 502)
            self.assertFalse(failed.json()["ok"])
            ids = {item["id"] for item in client.get("/snapshot").json()["registrations"]}
            self.assertIn("r_mock_3", ids)

    def test_statistics_calendar_and_notifications(self) -> None:
        with TestClient(self.app) as client:
            stats = client.get("/statistics").json()["statistics"]
            self.assertEqual(stats["total_courses"], 4)
            self.assertEqual(stats["approval_rate"], 67)

            self.assertEqual(client.get("/calendar").status_code, 401)
            self.assertEqual(client.get("/notifications").status_code, 401)

            self._login(client, "asm_hanoi", "password")
            calendar = client.get("/calendar", params={"requester_id": "u3"}).json()["entries"]
            self.assertEqual([entry["registration"]["id"] for entry in calendar], ["r_mock_1"])
            notes = client.get("/notifications").json()["notifications"]
            self.assertEqual([(note["id"], note["count"]) for note in notes], [("seats-confirmed", 1)])

            client.post("/session/logout")
            self._login(client, "ka_manager", "password")
            calendar = client.get("/calendar").json()["entries"]
            self.assertEqual(
                [entry["registration"]["id"] for entry in calendar],
                ["r_mock_1", "r_mock_2", "r_mock_3"],
            )
            notes = client.get("/notifications").json()["notifications"]
            self.assertEqual(
                [(note["id"], note["count"]) for note in notes],
                [("approve-courses", 2), ("approve-registrations", 1)],
            )

    def test_null_course_format_is_a_bad_request(self) -> None:
        with TestClient(self.app) as client:
            self._login(client, "admin", "admin")
            response = client.put("/courses/c1", json={"format": None})
            self.assertEqual(response.status_code, 400, response.text)
            self.assertEqual(self.store.write_log, [])

    def test_empty_remote_points_to_recovery(self) -> None:
        self.store.replace(Snapshot())
        with TestClient(self.app) as client:
            login = client.post("/session/login", json={"username": "admin", "password": "admin"})
            self.assertEqual(login.status_code, 409)
            self.assertEqual(login.json()["recovery"], "/recovery/reseed?confirm=true")

            reseeded = client.post("/recovery/reseed", params={"confirm": "true"})
            self.assertEqual(reseeded.status_code, 200, reseeded.text)
            self._login(client, "admin", "admin")

            popup = client.put("/settings/popup", json={"is_active": True, "link_url": "https://promo"})
            self.assertEqual(popup.status_code, 200, popup.text)
            settings = client.get("/snapshot").json()["settings"]
            self.assertEqual(settings["popup"]["linkUrl"], "https://promo")


if __name__ == "__main__":
    unittest.main()
