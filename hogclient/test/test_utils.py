import threading
import unittest
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from dateutil.tz import tzutc
from parameterized import parameterized

from hogclient import utils
from hogclient.transport import Transport, TransportResponse

TEST_API_KEY = "kOOlRy2QlMY9jHZQv0bKz0FZyazBUoY8Arj0lFVNjs4"
FAKE_TEST_API_KEY = "random_key"


class FakeTransport(object):
    """
    In-memory `Transport` for tests.

    Each call pops the next queued response for its endpoint, or returns the
    default one. Queued exceptions are raised instead of returned.
    """

    def __init__(self, definitions=None, flags=None, batch_response=None):
        self.lock = threading.Lock()
        self.definitions_responses = []
        self.flags_responses = []
        self.batch_responses = []
        self.default_definitions = definitions or TransportResponse(
            200, {"flags": [], "group_type_mapping": {}, "cohorts": {}}
        )
        self.default_flags = flags or TransportResponse(200, {"flags": {}})
        self.default_batch = batch_response or TransportResponse(200, {"status": "Ok"})
        self.batches = []
        self.remote_requests = []
        self.definition_fetches = 0
        self.batch_sent = threading.Event()

    def fetch_flag_definitions(self, timeout):
        with self.lock:
            self.definition_fetches += 1
            response = self._next(self.definitions_responses, self.default_definitions)
        return self._resolve(response)

    def send_batch(self, events):
        with self.lock:
            self.batches.append(list(events))
            response = self._next(self.batch_responses, self.default_batch)
        self.batch_sent.set()
        return self._resolve(response)

    def evaluate_remote(self, body, timeout):
        with self.lock:
            self.remote_requests.append(body)
            response = self._next(self.flags_responses, self.default_flags)
        return self._resolve(response)

    @property
    def sent_events(self):
        with self.lock:
            return [event for batch in self.batches for event in batch]

    def _next(self, queued, default):
        return queued.pop(0) if queued else default

    def _resolve(self, response):
        if isinstance(response, BaseException):
            raise response
        return response


def definitions_response(flags, group_type_mapping=None, cohorts=None):
    return TransportResponse(
        200,
        {
            "flags": flags,
            "group_type_mapping": group_type_mapping or {},
            "cohorts": cohorts or {},
        },
    )


class TestFakeTransport(unittest.TestCase):
    def test_implements_transport(self):
        self.assertIsInstance(FakeTransport(), Transport)

    def test_queued_responses_before_default(self):
        transport = FakeTransport()
        transport.flags_responses.append(TransportResponse(500, "boom"))
        transport.flags_responses.append(ValueError("network down"))

        self.assertEqual(transport.evaluate_remote({}, 1).status, 500)
        with self.assertRaises(ValueError):
            transport.evaluate_remote({}, 1)
        self.assertEqual(transport.evaluate_remote({}, 1).status, 200)


class TestUtils(unittest.TestCase):
    @parameterized.expand(
        [
            ("naive datetime should be naive", True),
            ("timezone-aware datetime should not be naive", False),
        ]
    )
    def test_is_naive(self, _name: str, expected_naive: bool):
        if expected_naive:
            dt = datetime.now()  # naive datetime
        else:
            dt = datetime.now(tz=tzutc())  # timezone-aware datetime

        assert utils.is_naive(dt) is expected_naive

    def test_timezone_utils(self):
        now = datetime.now()
        utcnow = datetime.now(tz=tzutc())

        fixed = utils.guess_timezone(now)
        assert utils.is_naive(fixed) is False

        shouldnt_be_edited = utils.guess_timezone(utcnow)
        assert utcnow == shouldnt_be_edited

    def test_old_naive_datetime_is_utc(self):
        old = datetime(2020, 1, 1, 12, 0, 0)
        assert utils.guess_timezone(old).tzinfo == tzutc()

    def test_clean(self):
        simple = {
            "decimal": Decimal("0.142857"),
            "unicode": "woo",
            "date": datetime.now(),
            "long": 200000000,
            "integer": 1,
            "float": 2.0,
            "bool": True,
            "str": "woo",
            "none": None,
        }

        complicated = {
            "exception": Exception("This should show up"),
            "timedelta": timedelta(microseconds=20),
            "list": [1, 2, 3],
        }

        combined = dict(simple.items())
        combined.update(complicated.items())

        pre_clean_keys = combined.keys()

        utils.clean(combined)
        assert combined.keys() == pre_clean_keys

        # test UUID separately, as the UUID object doesn't equal its string representation according to Python
        assert (
            utils.clean(UUID("12345678123456781234567812345678"))
            == "12345678-1234-5678-1234-567812345678"
        )

    def test_clean_decimal_and_set(self):
        cleaned = utils.clean({"decimal": Decimal("1.5"), "tags": {"a"}})
        assert cleaned == {"decimal": 1.5, "tags": ["a"]}

    def test_clean_with_dates(self):
        dict_with_dates = {
            "birthdate": date(1980, 1, 1),
            "registration": datetime.now(tz=tzutc()),
        }
        assert dict_with_dates == utils.clean(dict_with_dates)

    def test_bytes(self):
        item = bytes(10)
        assert utils.clean(item) == "\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00"

    def test_clean_fn(self):
        cleaned = utils.clean({"fn": lambda x: x, "number": 4})
        assert cleaned == {"fn": None, "number": 4}

    @parameterized.expand(
        [
            ("http://example.com/", "http://example.com"),
            ("http://example.com", "http://example.com"),
            ("https://example.com/path/", "https://example.com/path"),
            ("https://example.com/path", "https://example.com/path"),
        ]
    )
    def test_remove_slash(self, input_url, expected_url):
        assert expected_url == utils.remove_trailing_slash(input_url)

    def test_clean_dataclass(self):
        @dataclass
        class InnerDataClass:
            inner_foo: str
            inner_uuid: UUID
            inner_optional: Optional[str] = None

        @dataclass
        class TestDataClass:
            foo: str
            nested: InnerDataClass

        assert utils.clean(
            TestDataClass(
                foo="1",
                nested=InnerDataClass(
                    inner_foo="3",
                    inner_uuid=UUID("12345678123456781234567812345678"),
                ),
            )
        ) == {
            "foo": "1",
            "nested": {
                "inner_foo": "3",
                "inner_uuid": "12345678-1234-5678-1234-567812345678",
                "inner_optional": None,
            },
        }

    @parameterized.expand(
        [
            (1, True),
            (1.5, True),
            (Decimal("2"), False),
            (True, False),
            ("1", False),
            (None, False),
        ]
    )
    def test_is_number(self, value, expected):
        assert utils.is_number(value) is expected

    @parameterized.expand(
        [
            ("Hello World", "WORLD", True),
            ("Hello World", "python", False),
            ("straße", "STRASSE", True),
        ]
    )
    def test_str_icontains(self, source, search, expected):
        assert utils.str_icontains(source, search) is expected

    def test_system_context(self):
        context = utils.system_context()
        self.assertEqual(
            set(context.keys()),
            {"$python_runtime", "$python_version", "$os", "$os_version"},
        )


class TestSizeLimitedDict(unittest.TestCase):
    @parameterized.expand([(10, 100), (5, 20), (20, 200)])
    def test_size_limited_dict(self, size: int, iterations: int) -> None:
        values = utils.SizeLimitedDict(size, lambda _: -1)

        for i in range(iterations):
            values[i] = i

            assert values[i] == i
            assert len(values) == i % size + 1

            if i % size == 0:
                # old numbers should've been removed
                self.assertIsNone(values.get(i - 1))
                self.assertIsNone(values.get(i - 3))
                self.assertIsNone(values.get(i - 5))
                self.assertIsNone(values.get(i - 9))
