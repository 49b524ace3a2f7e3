import shutil
import tempfile
import unittest

import mongomock
from fastapi.testclient import TestClient

from main import create_app


class FakeSocket:
    """Records frames the server pushes to a connection."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("Cannot call \"send\" once a close message has been sent.")
        self.sent.append(data)

    def events(self, name=None):
        return [frame for frame in self.sent if name is None or frame["event"] == name]


class AppTestCase(unittest.TestCase):
    def setUp(self):
        self.db = mongomock.MongoClient()["campus_connect_test"]
        self.upload_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.upload_dir, ignore_errors=True)

        self.app = create_app(database=self.db, upload_dir=self.upload_dir)
        self.client = TestClient(self.app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def signup(self, email="a@x.com", password="p1", **fields):
        return self.client.post("/api/signup", json={"email": email, "password": password, **fields})

    def send(self, sender, receiver, text):
        return self.client.post(
            "/api/send-message",
            json={"senderEmail": sender, "receiverEmail": receiver, "message": text},
        )
