import base64
import json
import unittest
from unittest.mock import MagicMock

from bus_manager.storage import (
    GitHubStorageClient,
    StorageError,
    backup_github_token,
    obfuscate_token,
    restore_github_token,
)


def _response(status_code, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.json.return_value = payload or {}
    return response


def _contents(doc, sha="sha-1"):
    encoded = base64.b64encode(json.dumps(doc).encode("utf-8")).decode("ascii")
    return _response(200, {"sha": sha, "content": encoded})


class GitHubStorageTests(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.client = GitHubStorageClient(
            owner="alice", repo="buses", token="tok", session=self.session
        )

    def test_get_json_decodes_and_caches_sha(self):
        self.session.get.return_value = _contents({"users": []}, sha="abc")
        self.session.put.return_value = _response(200, {"content": {"sha": "def"}})

        self.assertEqual(self.client.get_json("users.json"), {"users": []})
        args, kwargs = self.session.get.call_args
        self.assertTrue(args[0].endswith("/repos/alice/buses/contents/users.json"))
        self.assertEqual(kwargs["params"], {"ref": "main"})
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok")

        self.client.put_json("users.json", {"users": [{"uid": "u1"}]}, "Update user: u1")
        self.assertEqual(self.session.get.call_count, 1)
        body = self.session.put.call_args.kwargs["json"]
        self.assertEqual(body["sha"], "abc")
        self.assertEqual(body["message"], "Update user: u1")
        self.assertEqual(body["branch"], "main")
        decoded = json.loads(base64.b64decode(body["content"]).decode("utf-8"))
        self.assertEqual(decoded, {"users": [{"uid": "u1"}]})

    def test_missing_file_is_none(self):
        self.session.get.return_value = _response(404)
        self.assertIsNone(self.client.get_json("data.json"))

    def test_api_error_raises(self):
        self.session.get.return_value = _response(500)
        with self.assertRaises(StorageError) as ctx:
            self.client.get_json("data.json")
        self.assertEqual(str(ctx.exception), "GitHub API error: 500")

    def test_unconfigured_client_raises(self):
        client = GitHubStorageClient(owner=None, repo="buses", token="tok", session=self.session)
        self.assertFalse(client.is_configured())
        with self.assertRaises(StorageError):
            client.get_json("data.json")
        self.session.get.assert_not_called()

    def test_stale_sha_is_refetched_once(self):
        self.client._sha_cache["data.json"] = "old"
        self.session.get.return_value = _contents({}, sha="fresh")
        self.session.put.side_effect = [
            _response(409, {"message": "data.json does not match old"}),
            _response(200, {"content": {"sha": "new"}}),
        ]
        self.client.put_json("data.json", {"buses": []})
        self.assertEqual(self.session.put.call_count, 2)
        self.assertEqual(self.session.put.call_args.kwargs["json"]["sha"], "fresh")
        self.assertEqual(self.client._sha_cache["data.json"], "new")

    def test_other_put_errors_raise(self):
        self.session.get.return_value = _response(404)
        self.session.put.return_value = _response(422, {"message": "Invalid request"})
        with self.assertRaises(StorageError):
            self.client.put_json("data.json", {})
        self.assertEqual(self.session.put.call_count, 1)

    def test_unreadable_sha_still_writes(self):
        self.session.get.return_value = _response(502)
        self.session.put.return_value = _response(201, {"content": {"sha": "new"}})
        with self.assertLogs("bus_manager.storage", level="WARNING"):
            self.client.put_json("data.json", {"buses": []})
        self.assertNotIn("sha", self.session.put.call_args.kwargs["json"])
        self.assertEqual(self.client._sha_cache["data.json"], "new")

    def test_write_without_json_body_succeeds(self):
        self.client._sha_cache["data.json"] = "abc"
        response = _response(200)
        response.json.side_effect = ValueError("no body")
        self.session.put.return_value = response
        self.client.put_json("data.json", {"buses": []})
        self.assertNotIn("data.json", self.client._sha_cache)

    def test_connection_check(self):
        self.session.get.return_value = _response(200, {"full_name": "alice/buses"})
        self.assertEqual(
            self.client.test_connection(),
            {"success": True, "repo": {"full_name": "alice/buses"}},
        )
        self.session.get.return_value = _response(401)
        self.assertFalse(self.client.test_connection()["success"])


class TokenBackupTests(unittest.TestCase):
    def test_backup_merges_into_settings(self):
        session = MagicMock()
        session.get.return_value = _contents({"googleMapsKey": "k"})
        session.put.return_value = _response(200, {"content": {"sha": "s2"}})
        client = GitHubStorageClient(owner="alice", repo="buses", token="tok", session=session)

        backup_github_token(client, "key")

        body = session.put.call_args.kwargs["json"]
        saved = json.loads(base64.b64decode(body["content"]).decode("utf-8"))
        self.assertEqual(saved["googleMapsKey"], "k")
        self.assertEqual(saved["githubOwner"], "alice")
        self.assertEqual(saved["githubToken"], obfuscate_token("tok", "key"))

    def test_restore_reconfigures_client(self):
        session = MagicMock()
        session.get.return_value = _contents(
            {
                "githubToken": obfuscate_token("real-token", "key"),
                "githubOwner": "alice",
                "githubRepo": "buses",
                "githubBranch": "data",
            }
        )
        client = GitHubStorageClient(owner=None, repo=None, token=None, session=session)

        restored = restore_github_token(client, "temp", "key", owner="alice", repo="buses")

        self.assertEqual(restored, {"owner": "alice", "repo": "buses", "branch": "data"})
        self.assertEqual(client.token, "real-token")
        self.assertTrue(client.is_configured())
        headers = session.get.call_args.kwargs["headers"]
        self.assertEqual(headers["Authorization"], "Bearer temp")

    def test_restore_without_backup_fails(self):
        session = MagicMock()
        session.get.return_value = _contents({})
        client = GitHubStorageClient(owner="alice", repo="buses", token="tok", session=session)
        with self.assertRaises(StorageError):
            restore_github_token(client, "temp", "key")
        self.assertEqual(client.token, "tok")


if __name__ == "__main__":
    unittest.main()
