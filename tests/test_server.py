import base64
import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient

from db_case import BackendTestCase

import server


class TestTurnEndpoint(BackendTestCase):
    def setUp(self):
        super().setUp()
        server.set_backend(self.backend)
        # no `with`: the lifespan hook would build a backend from env settings
        self.client = TestClient(server.app)

    def tearDown(self):
        server.set_backend(None)
        super().tearDown()

    def turn(self, identity: str, text: str):
        return self.client.post("/turn", json={"identity": identity, "text": text})

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_text_turn(self):
        resp = self.turn("573001", "hola")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"type": "text", "text": self.tr("welcome")})

    def test_turns_share_the_session(self):
        self.turn("573001", "1")
        resp = self.turn("573001", "registrarme")
        self.assertEqual(resp.json()["text"], self.tr("ask_name"))

    def test_file_turn(self):
        self.add_user("ana@uni.edu", name="Ana Pérez", national_id="1001")
        for text in ["1", "ya estoy registrado", "ana@uni.edu", "1001"]:
            self.turn("573001", text)

        body = self.turn("573001", "constancia").json()

        self.assertEqual(body["type"], "file")
        self.assertEqual(body["mime_type"], "text/plain")
        self.assertIn("Ana Pérez", base64.b64decode(body["data_base64"]).decode("utf-8"))

    def test_empty_identity_is_rejected(self):
        self.assertEqual(self.turn("", "hola").status_code, 422)


if __name__ == "__main__":
    unittest.main()
