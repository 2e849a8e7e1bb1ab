import unittest

import hogclient
from hogclient.context import clear_context
from hogclient.errors import ConfigurationError
from hogclient.test.test_utils import FAKE_TEST_API_KEY
from hogclient.types import CLIENT_DISABLED, LocalEvaluationUnavailable


class TestModule(unittest.TestCase):
    def setUp(self):
        clear_context()
        hogclient.default_client = None
        hogclient.api_key = FAKE_TEST_API_KEY
        hogclient.test_mode = True
        hogclient.disabled = False

    def tearDown(self):
        if hogclient.default_client:
            hogclient.shutdown()
        hogclient.default_client = None
        hogclient.api_key = None
        hogclient.test_mode = False
        hogclient.disabled = False
        hogclient.super_properties = None
        clear_context()

    def test_no_api_key(self):
        hogclient.api_key = None
        with self.assertRaises(ConfigurationError):
            hogclient.capture("python module event", distinct_id="distinct_id")

    def test_capture(self):
        uuid = hogclient.capture("python module event", distinct_id="distinct_id")

        self.assertIsInstance(uuid, str)
        events = hogclient.default_client.captured_events
        self.assertEqual(events[0]["event"], "python module event")

    def test_settings_reach_default_client(self):
        hogclient.super_properties = {"source": "module"}

        hogclient.capture("python module event", distinct_id="distinct_id")

        event = hogclient.default_client.captured_events[0]
        self.assertEqual(event["properties"]["source"], "module")

    def test_module_context(self):
        with hogclient.new_context():
            hogclient.set_context({"distinct_id": "context-user"})
            hogclient.set_context({"coupon": "SAVE10"}, event="purchase")
            self.assertEqual(hogclient.get_context(), {"distinct_id": "context-user"})

            hogclient.capture("purchase")

        event = hogclient.default_client.captured_events[0]
        self.assertEqual(event["distinct_id"], "context-user")
        self.assertEqual(event["properties"]["coupon"], "SAVE10")
        self.assertEqual(hogclient.get_context(), {})

    def test_disabled_is_applied_on_every_call(self):
        hogclient.capture("first", distinct_id="distinct_id")
        hogclient.disabled = True

        self.assertIsNone(hogclient.capture("second", distinct_id="distinct_id"))
        self.assertEqual(
            hogclient.check("beta-feature", "distinct_id"),
            LocalEvaluationUnavailable("beta-feature", CLIENT_DISABLED),
        )
        self.assertEqual(len(hogclient.default_client.captured_events), 1)

    def test_flush(self):
        hogclient.capture("python module event", distinct_id="distinct_id")
        self.assertIsNone(hogclient.flush())
        self.assertTrue(hogclient.flush(blocking=True).success)

    def test_shutdown(self):
        hogclient.capture("python module event", distinct_id="distinct_id")
        hogclient.shutdown()
        self.assertTrue(hogclient.default_client._is_shutdown)
