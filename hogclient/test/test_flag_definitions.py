import threading
import time
import unittest
from dataclasses import fields
from datetime import datetime
from types import MappingProxyType

import mock
from dateutil.tz import tzutc
from freezegun import freeze_time
from parameterized import parameterized

from hogclient.flag_definitions import (
    IDLE,
    UNINITIALIZED,
    FlagDefinitionPoller,
    FlagDefinitionStore,
)
from hogclient.test.test_utils import FakeTransport, definitions_response
from hogclient.transport import TransportResponse
from hogclient.types import DefinitionSnapshot, EvalOptions

BETA_FLAG = {
    "id": 1,
    "key": "beta-feature",
    "active": True,
    "filters": {"groups": [{"properties": [], "rollout_percentage": 100}]},
}


class TestFlagDefinitionStore(unittest.TestCase):
    def test_starts_empty(self):
        snapshot = FlagDefinitionStore().get_feature_flags()
        self.assertEqual(snapshot.flags, ())
        self.assertIsNone(snapshot.last_updated)

    def test_empty_mappings_are_built_per_instance(self):
        for cls in (DefinitionSnapshot, EvalOptions):
            for f in fields(cls):
                self.assertNotIsInstance(f.default, MappingProxyType, f"{cls.__name__}.{f.name}")

        snapshot = DefinitionSnapshot()
        self.assertEqual(snapshot.group_type_mapping, {})
        self.assertEqual(EvalOptions("user").person_properties, {})
        with self.assertRaises(TypeError):
            snapshot.cohorts["1"] = {}

    @freeze_time("2024-05-01 12:00:00")
    def test_replace_stamps_last_updated(self):
        store = FlagDefinitionStore()
        store.replace([BETA_FLAG], {"0": "company"}, {"1": {"type": "AND"}})

        snapshot = store.get_feature_flags()
        self.assertEqual(snapshot.flags, (BETA_FLAG,))
        self.assertEqual(snapshot.group_type_mapping, {"0": "company"})
        self.assertEqual(snapshot.cohorts, {"1": {"type": "AND"}})
        self.assertEqual(snapshot.last_updated, datetime(2024, 5, 1, 12, tzinfo=tzutc()))
        self.assertEqual(snapshot.get("beta-feature"), BETA_FLAG)
        self.assertIn("beta-feature", snapshot)

    def test_snapshots_are_replaced_not_mutated(self):
        store = FlagDefinitionStore()
        store.replace([BETA_FLAG], {}, {})
        before = store.get_feature_flags()

        store.replace([], {}, {})

        self.assertEqual(before.flags, (BETA_FLAG,))
        self.assertEqual(store.get_feature_flags().flags, ())
        with self.assertRaises(TypeError):
            before.group_type_mapping["0"] = "company"

    def test_non_dict_definitions_are_skipped(self):
        store = FlagDefinitionStore()
        store.replace([BETA_FLAG, "garbage", None], {}, {})
        self.assertEqual(store.get_feature_flags().flags, (BETA_FLAG,))


class TestFlagDefinitionPoller(unittest.TestCase):
    def setUp(self):
        self.transport = FakeTransport(definitions=definitions_response([BETA_FLAG]))
        self.pollers = []

    def tearDown(self):
        for poller in self.pollers:
            poller.stop()

    def make_poller(self, enabled=True, poll_interval_ms=60_000, fetch=None):
        poller = FlagDefinitionPoller(
            fetch or self.transport.fetch_flag_definitions,
            enabled=enabled,
            poll_interval_ms=poll_interval_ms,
            request_timeout_ms=500,
        )
        self.pollers.append(poller)
        return poller

    def test_poll_success_replaces_snapshot(self):
        poller = self.make_poller()

        self.assertTrue(poller.poll())

        snapshot = poller.get_feature_flags()
        self.assertEqual(snapshot.flags, (BETA_FLAG,))
        self.assertIsNotNone(snapshot.last_updated)
        self.assertTrue(poller.can_evaluate_locally("beta-feature"))
        self.assertFalse(poller.can_evaluate_locally("other-feature"))

    def test_fetch_uses_request_timeout_in_seconds(self):
        timeouts = []

        def fetch(timeout):
            timeouts.append(timeout)
            return definitions_response([])

        self.make_poller(fetch=fetch).poll()
        self.assertEqual(timeouts, [0.5])

    @parameterized.expand(
        [
            ("network_error", ConnectionError("connection refused"), "WARNING"),
            ("unauthorized", TransportResponse(401, {"detail": "Invalid token"}), "ERROR"),
            ("quota_limited", TransportResponse(402, {"detail": "Quota"}), "WARNING"),
            ("server_error", TransportResponse(500, "Internal Server Error"), "WARNING"),
            ("not_found", TransportResponse(404, {"detail": "Not found"}), "WARNING"),
            ("body_not_a_dict", TransportResponse(200, "<html>"), "WARNING"),
        ]
    )
    def test_poll_failure_preserves_snapshot(self, _name, failure, level):
        poller = self.make_poller()
        self.assertTrue(poller.poll())
        before = poller.get_feature_flags()

        self.transport.definitions_responses.append(failure)
        with self.assertLogs("hogclient", level=level):
            self.assertFalse(poller.poll())

        after = poller.get_feature_flags()
        self.assertIs(after, before)
        self.assertEqual(after.last_updated, before.last_updated)
        self.assertEqual(after.flags, (BETA_FLAG,))

    def test_unauthorized_message(self):
        poller = self.make_poller()
        self.transport.definitions_responses.append(TransportResponse(401, {}))

        with self.assertLogs("hogclient", level="ERROR") as logs:
            poller.poll()

        self.assertIn(
            "[FEATURE FLAGS] Error loading feature flags: To use feature flags, please set a valid personal_api_key.",
            logs.output[0],
        )

    def test_failure_before_first_success_keeps_flags_unloaded(self):
        poller = self.make_poller()
        self.transport.definitions_responses.append(TransportResponse(500, ""))

        with self.assertLogs("hogclient", level="WARNING"):
            poller.poll()

        self.assertIsNone(poller.get_feature_flags().last_updated)

    def test_disabled_poller_stays_idle(self):
        poller = self.make_poller(enabled=False)

        with self.assertLogs("hogclient", level="INFO") as logs:
            poller.start()

        self.assertIn("Local evaluation disabled", logs.output[0])
        self.assertEqual(poller.state, IDLE)
        self.assertFalse(poller.is_alive())
        self.assertFalse(poller.local_evaluation_enabled)

        poller.refresh()
        self.assertFalse(poller.wait_for_polls(1, timeout=0.1))
        self.assertEqual(self.transport.definition_fetches, 0)
        self.assertIsNone(poller.get_feature_flags().last_updated)

    def test_start_polls_immediately(self):
        poller = self.make_poller()
        self.assertEqual(poller.state, UNINITIALIZED)

        poller.start()

        self.assertTrue(poller.wait_for_polls(1, timeout=2))
        self.assertEqual(poller.state, IDLE)
        self.assertEqual(poller.get_feature_flags().flags, (BETA_FLAG,))

    def test_polls_periodically(self):
        poller = self.make_poller(poll_interval_ms=20)
        poller.start()

        self.assertTrue(poller.wait_for_polls(3, timeout=5))
        self.assertGreaterEqual(self.transport.definition_fetches, 3)

    def test_failures_are_retried_on_schedule(self):
        self.transport.definitions_responses.extend(
            [ConnectionError("down"), TransportResponse(500, "")]
        )
        poller = self.make_poller(poll_interval_ms=20)

        with self.assertLogs("hogclient", level="WARNING"):
            poller.start()
            self.assertTrue(poller.wait_for_polls(3, timeout=5))

        self.assertEqual(poller.get_feature_flags().flags, (BETA_FLAG,))

    def test_refresh_requests_are_coalesced(self):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def fetch(timeout):
            calls.append(timeout)
            started.set()
            release.wait(5)
            return definitions_response([BETA_FLAG])

        poller = self.make_poller(fetch=fetch)
        poller.start()
        self.assertTrue(started.wait(2))

        # a poll is in flight, these collapse into a single follow-up poll
        poller.refresh()
        poller.refresh()
        poller.refresh()
        release.set()

        self.assertTrue(poller.wait_for_polls(2, timeout=2))
        time.sleep(0.1)
        self.assertEqual(len(calls), 2)

    def test_refresh_triggers_poll(self):
        poller = self.make_poller()
        poller.start()
        self.assertTrue(poller.wait_for_polls(1, timeout=2))

        poller.refresh()

        self.assertTrue(poller.wait_for_polls(2, timeout=2))
        self.assertEqual(self.transport.definition_fetches, 2)

    def test_refresh_wakes_every_waiter(self):
        poller = self.make_poller()

        with mock.patch.object(poller._condition, "notify_all") as notify_all, mock.patch.object(
            poller._condition, "notify"
        ) as notify:
            poller.refresh()

        notify_all.assert_called_once_with()
        notify.assert_not_called()

    def test_timer_wakes_every_waiter(self):
        poller = self.make_poller()
        with poller._condition:
            poller._schedule_next_poll()
        timer = poller._timer

        with mock.patch.object(poller._condition, "notify_all") as notify_all, mock.patch.object(
            poller._condition, "notify"
        ) as notify:
            poller._on_timer(poller._timer_token)
        timer.cancel()

        notify_all.assert_called_once_with()
        notify.assert_not_called()

    def test_polls_continue_while_callers_wait(self):
        poller = self.make_poller(poll_interval_ms=20)
        waiters = [
            threading.Thread(target=poller.wait_for_polls, args=(10_000, 2), daemon=True)
            for _ in range(3)
        ]
        for waiter in waiters:
            waiter.start()

        poller.start()
        self.assertTrue(poller.wait_for_polls(1, timeout=2))
        poller.refresh()

        self.assertTrue(poller.wait_for_polls(10, timeout=5))
        self.assertGreaterEqual(self.transport.definition_fetches, 10)

    def test_superseded_timer_is_ignored(self):
        poller = self.make_poller()

        with poller._condition:
            poller._schedule_next_poll()
        stale_token = poller._timer_token
        with poller._condition:
            poller._schedule_next_poll()

        with self.assertLogs("hogclient", level="DEBUG") as logs:
            poller._on_timer(stale_token)
        self.assertIn("Ignoring superseded poll timer", logs.output[0])
        self.assertFalse(poller._poll_requested)

        timer = poller._timer
        poller._on_timer(poller._timer_token)
        timer.cancel()
        self.assertTrue(poller._poll_requested)
        self.assertIsNone(poller._timer)

    def test_stop_joins_thread(self):
        poller = self.make_poller()
        poller.start()
        self.assertTrue(poller.wait_for_polls(1, timeout=2))

        poller.stop()

        self.assertFalse(poller.is_alive())
        self.assertIsNone(poller._timer)

    def test_stop_before_start(self):
        poller = self.make_poller()
        poller.stop()
        self.assertFalse(poller.is_alive())
