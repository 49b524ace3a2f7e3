import unittest
from datetime import datetime, timedelta

from tests.support import AppTestCase, FakeSocket


class SendMessageTests(AppTestCase):
    def test_send_requires_all_fields(self):
        response = self.client.post("/api/send-message", json={"senderEmail": "a@x.com", "message": "hi"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "All fields are required")
        self.assertEqual(self.db["message"].count_documents({}), 0)

    def test_send_to_offline_receiver_is_persisted_only(self):
        response = self.send("a@x.com", "b@x.com", "hi")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True, "message": "Message sent successfully"})

        conversation = self.client.get("/api/messages/a@x.com/b@x.com").json()
        self.assertEqual(len(conversation), 1)
        self.assertEqual(conversation[0]["sender"], "a@x.com")
        self.assertEqual(conversation[0]["receiver"], "b@x.com")
        self.assertEqual(conversation[0]["message"], "hi")
        self.assertFalse(conversation[0]["read"])
        self.assertIn("id", conversation[0])

    def test_send_to_connected_receiver_pushes_live(self):
        registry = self.app.state.registry
        socket = FakeSocket()
        registry.bind("b@x.com", registry.add(socket))

        self.send("a@x.com", "b@x.com", "hi")

        self.assertEqual(len(socket.sent), 1)
        frame = socket.sent[0]
        self.assertEqual(frame["event"], "receive-message")
        self.assertEqual(frame["data"]["sender"], "a@x.com")
        self.assertEqual(frame["data"]["receiver"], "b@x.com")
        self.assertEqual(frame["data"]["message"], "hi")
        self.assertIn("timestamp", frame["data"])

    def test_failed_live_delivery_still_succeeds(self):
        registry = self.app.state.registry
        registry.bind("b@x.com", registry.add(FakeSocket(fail=True)))

        response = self.send("a@x.com", "b@x.com", "hi")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.db["message"].count_documents({"receiver": "b@x.com"}), 1)


class ConversationTests(AppTestCase):
    def test_conversation_contains_both_directions_in_time_order(self):
        self.send("a@x.com", "b@x.com", "one")
        self.send("b@x.com", "a@x.com", "two")
        self.send("a@x.com", "c@x.com", "elsewhere")
        self.send("a@x.com", "b@x.com", "three")

        conversation = self.client.get("/api/messages/b@x.com/a@x.com").json()
        self.assertEqual({m["message"] for m in conversation}, {"one", "two", "three"})
        timestamps = [datetime.fromisoformat(m["timestamp"]) for m in conversation]
        self.assertEqual(timestamps, sorted(timestamps))

    def test_unread_counts_and_mark_read(self):
        self.send("a@x.com", "r@x.com", "1")
        self.send("a@x.com", "r@x.com", "2")
        self.send("b@x.com", "r@x.com", "3")
        self.send("r@x.com", "a@x.com", "reply")

        counts = self.client.get("/api/unread-counts/r@x.com").json()
        self.assertEqual(counts, {"a@x.com": 2, "b@x.com": 1})
        self.assertEqual(self.client.get("/api/total-unread/r@x.com").json(), {"totalUnread": 3})

        response = self.client.post("/api/mark-read", json={"sender": "a@x.com", "receiver": "r@x.com"})
        self.assertEqual(response.json(), {"success": True})
        counts = self.client.get("/api/unread-counts/r@x.com").json()
        self.assertNotIn("a@x.com", counts)
        self.assertEqual(counts, {"b@x.com": 1})

        # Repeating is a no-op
        response = self.client.post("/api/mark-read", json={"sender": "a@x.com", "receiver": "r@x.com"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/api/unread-counts/r@x.com").json(), {"b@x.com": 1})
        self.assertEqual(self.client.get("/api/total-unread/r@x.com").json(), {"totalUnread": 1})
        # The reverse direction is untouched
        self.assertEqual(self.client.get("/api/total-unread/a@x.com").json(), {"totalUnread": 1})

    def test_unread_counts_empty(self):
        self.assertEqual(self.client.get("/api/unread-counts/nobody@x.com").json(), {})
        self.assertEqual(self.client.get("/api/total-unread/nobody@x.com").json(), {"totalUnread": 0})

    def test_last_message_time_per_peer(self):
        base = datetime(2024, 5, 1, 12, 0, 0)
        self.db["message"].insert_many([
            {"sender": "u@x.com", "receiver": "p1@x.com", "message": "a", "timestamp": base, "read": False},
            {"sender": "p1@x.com", "receiver": "u@x.com", "message": "b",
             "timestamp": base + timedelta(minutes=5), "read": False},
            {"sender": "p2@x.com", "receiver": "u@x.com", "message": "c",
             "timestamp": base + timedelta(minutes=1), "read": False},
            {"sender": "p1@x.com", "receiver": "p2@x.com", "message": "not mine",
             "timestamp": base + timedelta(hours=1), "read": False},
        ])

        times = self.client.get("/api/last-message-times/u@x.com").json()
        self.assertEqual(set(times), {"p1@x.com", "p2@x.com"})
        self.assertEqual(datetime.fromisoformat(times["p1@x.com"]), base + timedelta(minutes=5))
        self.assertEqual(datetime.fromisoformat(times["p2@x.com"]), base + timedelta(minutes=1))


if __name__ == "__main__":
    unittest.main()
