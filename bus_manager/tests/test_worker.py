import unittest
from unittest.mock import patch

from bus_manager.db import InMemoryDbClient, JobStatus
from bus_manager.maps import StaticGeocoder
from bus_manager.queue import InMemoryJobQueue
from bus_manager.roster import RosterStore
from bus_manager.storage import InMemoryStorageClient
from bus_manager.worker import ASSIGNMENT_JOB, NO_DATA_ERROR, process_job, process_next


def _settings():
    return type(
        "Settings",
        (),
        {
            "optimizer_seed": 7,
            "max_bus_capacity": 50,
            "max_ride_time_minutes": 60,
            "max_total_route_minutes": 90,
        },
    )()


def _roster():
    store = RosterStore(InMemoryStorageClient())
    store.save_bus({"id": "b1", "name": "Line 1", "startLocation": "Start", "endLocation": "End"})
    store.save_bus({"id": "b2", "name": "Line 2", "startLocation": "Start", "endLocation": "End"})
    store.save_student({"id": "s1", "firstName": "Avi", "address": "A"})
    store.save_student({"id": "s2", "firstName": "Bea", "address": "B"})
    store.save_student({"id": "s3", "firstName": "Chen", "address": "C"})
    return store


def _geocoder():
    return StaticGeocoder(
        {
            "Start": (32.0, 34.8),
            "End": (32.5, 34.8),
            "A": (32.1, 34.8),
            "B": (32.2, 34.8),
            "C": (32.3, 34.8),
        }
    )


class WorkerTests(unittest.TestCase):
    @patch("bus_manager.worker.get_settings")
    def test_process_once_advances_status(self, mock_settings):
        mock_settings.return_value = _settings()
        db = InMemoryDbClient()
        queue = InMemoryJobQueue()
        job = db.create_job(ASSIGNMENT_JOB, {"algorithm": "greedy"})
        self.assertEqual(job.status, JobStatus.WAITING)

        queue.enqueue(job.job_id)
        processed = process_next(
            db=db, queue=queue, block=False, store=_roster(), geocoder=_geocoder()
        )
        self.assertTrue(processed)

        updated = db.get_job(job.job_id)
        self.assertEqual(updated.status, JobStatus.SUCCESS)
        self.assertEqual(updated.stage, "SUCCESS")
        self.assertEqual(updated.progress_percent, 1.0)
        self.assertEqual(updated.result["algorithm"], "greedy")
        self.assertEqual(updated.result["totalStudents"], 3)
        assigned = [sid for ids in updated.result["assignments"].values() for sid in ids]
        self.assertEqual(sorted(assigned), ["s1", "s2", "s3"])

    def test_process_once_no_jobs(self):
        db = InMemoryDbClient()
        queue = InMemoryJobQueue()
        processed = process_next(db=db, queue=queue, block=False)
        self.assertFalse(processed)

    @patch("bus_manager.worker.get_settings")
    def test_waiting_job_is_picked_without_queue_entry(self, mock_settings):
        mock_settings.return_value = _settings()
        db = InMemoryDbClient()
        job = db.create_job(ASSIGNMENT_JOB, {"algorithm": "local_search"})
        self.assertTrue(
            process_next(
                db=db, queue=InMemoryJobQueue(), block=False, store=_roster(), geocoder=_geocoder()
            )
        )
        self.assertEqual(db.get_job(job.job_id).status, JobStatus.SUCCESS)

    def test_claimed_job_from_queue_is_skipped(self):
        db = InMemoryDbClient()
        queue = InMemoryJobQueue()
        job = db.create_job(ASSIGNMENT_JOB)
        db.claim_job(job.job_id)
        queue.enqueue(job.job_id)
        self.assertFalse(process_next(db=db, queue=queue, block=False))

    @patch("bus_manager.worker.get_settings")
    def test_bus_filter_and_no_data(self, mock_settings):
        mock_settings.return_value = _settings()
        db = InMemoryDbClient()
        job = db.create_job(ASSIGNMENT_JOB, {"bus_ids": ["nope"]})
        db.claim_job(job.job_id)

        process_job(job, db, store=_roster(), geocoder=_geocoder())

        updated = db.get_job(job.job_id)
        self.assertEqual(updated.status, JobStatus.ERROR)
        self.assertEqual(updated.stage, "NO_DATA")
        self.assertEqual(updated.error, NO_DATA_ERROR)

    @patch("bus_manager.worker.get_settings")
    def test_bus_filter_limits_buses(self, mock_settings):
        mock_settings.return_value = _settings()
        db = InMemoryDbClient()
        job = db.create_job(ASSIGNMENT_JOB, {"algorithm": "greedy", "bus_ids": ["b2"]})

        process_job(job, db, store=_roster(), geocoder=_geocoder())

        result = db.get_job(job.job_id).result
        self.assertEqual(list(result["assignments"]), ["b2"])

    @patch("bus_manager.worker.get_settings")
    def test_failure_is_recorded(self, mock_settings):
        mock_settings.return_value = _settings()
        db = InMemoryDbClient()
        job = db.create_job(ASSIGNMENT_JOB, {"algorithm": "magic"})

        process_job(job, db, store=_roster(), geocoder=_geocoder())

        updated = db.get_job(job.job_id)
        self.assertEqual(updated.status, JobStatus.ERROR)
        self.assertEqual(updated.stage, "ERROR")
        self.assertIn("magic", updated.error)


if __name__ == "__main__":
    unittest.main()
