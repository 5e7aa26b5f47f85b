import unittest

from fastapi import HTTPException

from bus_manager.auth import GUEST_USER, get_current_user, is_admin, require_admin
from bus_manager.config import Settings
from bus_manager.roster import RosterStore
from bus_manager.storage import InMemoryStorageClient


class CurrentUserTests(unittest.TestCase):
    def setUp(self):
        self.store = RosterStore(InMemoryStorageClient())
        self.store.save_user({"uid": "u1", "role": "user", "approved": True})
        self.header_mode = Settings(auth_mode="header")

    def test_open_mode_returns_guest_admin(self):
        user = get_current_user(None, Settings(auth_mode="open"), self.store)
        self.assertEqual(user, GUEST_USER)
        self.assertTrue(is_admin(user))

    def test_header_mode(self):
        user = get_current_user("u1", self.header_mode, self.store)
        self.assertEqual(user["uid"], "u1")
        with self.assertRaises(HTTPException) as ctx:
            get_current_user(None, self.header_mode, self.store)
        self.assertEqual(ctx.exception.status_code, 401)

    def test_require_admin(self):
        with self.assertRaises(HTTPException) as ctx:
            require_admin({"uid": "u1", "role": "user"})
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(require_admin(dict(GUEST_USER))["uid"], "guest")


if __name__ == "__main__":
    unittest.main()
