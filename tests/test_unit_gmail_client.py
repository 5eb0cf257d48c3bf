#!/usr/bin/env python3
"""
Unit tests for GmailApiClient with a mocked requests session
"""

import os
import sys
import threading
import unittest
from unittest.mock import MagicMock

import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gmail_client import GmailApiClient, GmailApiError, listing_ids


def make_response(status_code=200, payload=None, reason="OK"):
    response = MagicMock()
    response.status_code = status_code
    response.reason = reason
    response.json.return_value = payload if payload is not None else {}
    return response


class TestGmailApiClient(unittest.TestCase):
    """Test cases for GmailApiClient"""

    def setUp(self):
        self.session = MagicMock()
        self.client = GmailApiClient("token-123", session=self.session, fetch_workers=4)

    def test_list_messages_sends_bearer_token_and_repeated_labels(self):
        self.session.get.return_value = make_response(
            payload={"messages": [{"id": "m1", "threadId": "t1"}], "resultSizeEstimate": 1}
        )

        result = self.client.list_messages(25, ["SENT", "IMPORTANT"])

        self.assertEqual(result, [{"id": "m1", "threadId": "t1"}])
        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "https://www.googleapis.com/gmail/v1/users/me/messages")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer token-123")
        self.assertEqual(
            kwargs["params"], [("maxResults", 25), ("labelIds", "SENT"), ("labelIds", "IMPORTANT")]
        )
        self.assertEqual(kwargs["timeout"], 30)

    def test_list_without_collection_field_is_empty(self):
        self.session.get.return_value = make_response(payload={"resultSizeEstimate": 0})
        self.assertEqual(self.client.list_threads(), [])

    def test_list_with_malformed_collection_raises(self):
        self.session.get.return_value = make_response(payload={"threads": "oops"})
        with self.assertRaises(GmailApiError) as context:
            self.client.list_threads()
        self.assertIn('malformed "threads" field', str(context.exception))

    def test_list_with_malformed_entries_raises(self):
        for entries in (["abc"], [{"threadId": "t1"}], [{"id": "m1"}, {"id": None}]):
            self.session.get.return_value = make_response(payload={"messages": entries})
            with self.assertRaises(GmailApiError, msg=repr(entries)):
                self.client.list_messages()

    def test_listing_ids(self):
        self.assertEqual(listing_ids([{"id": "m1"}, {"id": "m2", "threadId": "t"}], "messages"), ["m1", "m2"])
        with self.assertRaises(GmailApiError) as context:
            listing_ids([{"id": "m1"}, "m2"], "messages")
        self.assertIn('malformed entry in "messages"', str(context.exception))

    def test_non_200_raises(self):
        self.session.get.return_value = make_response(status_code=401, reason="Unauthorized")
        with self.assertRaises(GmailApiError) as context:
            self.client.get_message("m1")
        self.assertEqual(str(context.exception), "Gmail API error: 401 Unauthorized")

    def test_transport_error_raises(self):
        self.session.get.side_effect = requests.ConnectionError("connection reset")
        with self.assertRaises(GmailApiError):
            self.client.list_messages()

    def test_invalid_json_raises(self):
        response = make_response()
        response.json.side_effect = ValueError("no JSON")
        self.session.get.return_value = response
        with self.assertRaises(GmailApiError):
            self.client.get_thread("t1")

    def test_non_object_json_raises(self):
        self.session.get.return_value = make_response(payload=["not", "an", "object"])
        with self.assertRaises(GmailApiError):
            self.client.get_message("m1")

    def test_missing_token(self):
        client = GmailApiClient("", session=self.session)
        with self.assertRaises(GmailApiError):
            client.list_messages()
        self.session.get.assert_not_called()

    def test_get_message_requests_full_format(self):
        self.session.get.return_value = make_response(payload={"id": "m1"})
        self.client.get_message("m1")
        args, kwargs = self.session.get.call_args
        self.assertTrue(args[0].endswith("/messages/m1"))
        self.assertEqual(kwargs["params"], {"format": "full"})

    def test_get_messages_preserves_input_order(self):
        """Results come back in request order even when responses complete out of order"""
        release = {"m1": threading.Event(), "m2": threading.Event(), "m3": threading.Event()}

        def fake_get(url, **kwargs):
            message_id = url.rsplit("/", 1)[-1]
            if message_id == "m1":
                release["m3"].set()
                release["m1"].wait(timeout=5)
            elif message_id == "m3":
                release["m3"].wait(timeout=5)
                release["m1"].set()
            return make_response(payload={"id": message_id})

        self.session.get.side_effect = fake_get

        result = self.client.get_messages(["m1", "m2", "m3"])
        self.assertEqual([message["id"] for message in result], ["m1", "m2", "m3"])

    def test_get_messages_empty(self):
        self.assertEqual(self.client.get_messages([]), [])
        self.session.get.assert_not_called()

    def test_single_failure_fails_whole_batch(self):
        def fake_get(url, **kwargs):
            if url.endswith("/threads/t2"):
                return make_response(status_code=500, reason="Backend Error")
            return make_response(payload={"id": url.rsplit("/", 1)[-1], "messages": []})

        self.session.get.side_effect = fake_get

        with self.assertRaises(GmailApiError) as context:
            self.client.get_threads(["t1", "t2", "t3"])
        self.assertIn("500", str(context.exception))

    def test_unexpected_worker_error_is_wrapped(self):
        self.session.get.side_effect = RuntimeError("boom")
        with self.assertRaises(GmailApiError) as context:
            self.client.get_messages(["m1"])
        self.assertIsInstance(context.exception.__cause__, RuntimeError)


if __name__ == '__main__':
    unittest.main()
