import atexit
import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from dateutil.tz import tzutc
from typing_extensions import Unpack

from hogclient import context
from hogclient.args import ID_TYPES, OptionalCaptureArgs, OptionalFlagArgs
from hogclient.config import Config
from hogclient.errors import HogClientError, UnexpectedResponseError
from hogclient.feature_flags import (
    evaluate_all_flags,
    evaluate_flag,
    failed_flags,
    flag_values,
)
from hogclient.flag_definitions import FlagDefinitionPoller
from hogclient.sender import SenderPool
from hogclient.transport import HTTPTransport, Transport
from hogclient.types import (
    CLIENT_DISABLED,
    DefinitionSnapshot,
    EvalOptions,
    EvalResult,
    EvaluationError,
    FlagValue,
    FlushResult,
    InvalidRequest,
    LocalEvaluationUnavailable,
    Matched,
    NotFound,
)
from hogclient.utils import SizeLimitedDict, clean, guess_timezone, system_context
from hogclient.version import VERSION

MAX_DICT_SIZE = 50_000

MISSING_DISTINCT_ID = (
    "distinct_id is required but wasn't explicitly provided or found in the context"
)


def stringify_id(val):
    if val is None:
        return None
    if isinstance(val, str):
        return val
    return str(val)


def remote_flag_value(detail) -> FlagValue:
    """A flag value from one entry of the remote `flags` map."""
    if not isinstance(detail, dict):
        return False
    if detail.get("variant") is not None:
        return detail["variant"]
    return detail.get("enabled") is True


class Client(object):
    """
    Captures events and evaluates feature flags.

    Flags are evaluated against locally polled definitions when a personal API
    key is configured, with a fallback to remote evaluation. Events are batched
    by a pool of sender threads.

    Examples:
        ```python
        from hogclient import Client
        client = Client('<project_api_key>', personal_api_key='<personal_api_key>')
        client.capture('user_signed_up', distinct_id='distinct_id_of_the_user')
        if client.feature_enabled('new-onboarding', 'distinct_id_of_the_user'):
            ...
        client.shutdown()
        ```
    """

    log = logging.getLogger("hogclient")

    def __init__(
        self,
        api_key: str,
        host: Optional[str] = None,
        transport: Optional[Transport] = None,
        **options,
    ):
        """
        Args:
            api_key: The project API key.
            host: The host to use for the client. Defaults to US ingestion.
            transport: Replaces the HTTP transport, mostly useful in tests.
            **options: Any field of `hogclient.config.Config`.
        """
        self.config = Config.from_options(api_key, host=host, **options)

        self.api_key = api_key
        self.name = self.config.name
        self.disabled = self.config.disabled
        self.test_mode = self.config.test_mode
        self.super_properties = self.config.super_properties
        self.debug = self.config.debug

        if self.debug:
            # Ensures that debug level messages are logged when debug mode is on.
            # Otherwise, defaults to WARNING level.
            logging.basicConfig()
            self.log.setLevel(logging.DEBUG)
        else:
            self.log.setLevel(logging.WARNING)

        self.transport = transport or HTTPTransport(
            api_key,
            host=host,
            personal_api_key=self.config.personal_api_key,
            gzip=self.config.gzip,
            timeout=self.config.timeout,
        )

        self.distinct_ids_feature_flags_reported = SizeLimitedDict(MAX_DICT_SIZE, set)
        self._captured_events: List[Dict[str, Any]] = []
        self._captured_events_lock = threading.Lock()
        self._is_shutdown = False

        self.poller = FlagDefinitionPoller(
            self.transport.fetch_flag_definitions,
            enabled=self.config.local_evaluation_enabled,
            poll_interval_ms=self.config.feature_flags_poll_interval,
            request_timeout_ms=self.config.feature_flags_request_timeout,
        )

        if self.test_mode:
            self.pool = None
        else:
            self.pool = SenderPool(
                self.transport.send_batch,
                size=self.config.sender_pool_size,
                max_batch_events=self.config.max_batch_events,
                max_batch_time_ms=self.config.max_batch_time_ms,
                retries=self.config.max_retries,
                on_error=self.config.on_error,
            )
            self.pool.start()

        self.poller.start()

        # Drain the senders and stop the poller on program exit
        atexit.register(self.shutdown)

    def set_context(self, properties: Dict[str, Any]) -> None:
        context.set_context(self.name, properties)

    def set_event_context(self, event: str, properties: Dict[str, Any]) -> None:
        context.set_context(self.name, properties, event=event)

    def get_context(self) -> Dict[str, Any]:
        return context.get_context(self.name)

    def get_event_context(self, event: str) -> Dict[str, Any]:
        return context.get_context(self.name, event)

    def capture(
        self, event: str, **kwargs: Unpack[OptionalCaptureArgs]
    ) -> Optional[str]:
        """
        Captures an event.

        Properties from the context (both the shared and the event-specific
        scopes) are merged under the passed properties. The distinct id comes
        from the arguments or else from the context's `distinct_id` key.

        Args:
            event: The event name to capture.
            distinct_id: The distinct ID of the user.
            properties: A dictionary of properties to include with the event.
            timestamp: The timestamp of the event.
            uuid: A unique identifier for the event.
            groups: A dictionary of group information.

        Raises:
            MissingDistinctIdError: no distinct id was passed or found in the context.

        Examples:
            ```python
            client.capture('movie played', distinct_id='user123', properties={'title': 'Heat'})
            ```
            ```python
            with hogclient.new_context():
                client.set_context({'distinct_id': 'user123'})
                client.capture('user_logged_in')
            ```
        """
        if self.disabled:
            return None

        properties = {**self.get_event_context(event), **(kwargs.get("properties") or {})}
        context_distinct_id = properties.pop("distinct_id", None)
        distinct_id = stringify_id(kwargs.get("distinct_id")) or stringify_id(
            context_distinct_id
        )
        if not distinct_id:
            raise InvalidRequest(None, MISSING_DISTINCT_ID).to_exception()

        properties = {**properties, **system_context()}

        groups = kwargs.get("groups")
        if groups:
            properties["$groups"] = groups

        msg = {
            "properties": properties,
            "timestamp": kwargs.get("timestamp"),
            "distinct_id": distinct_id,
            "event": event,
            "uuid": kwargs.get("uuid"),
        }

        return self._enqueue(msg)

    def bare_capture(
        self,
        event: str,
        distinct_id: ID_TYPES,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Capture `event` as given, without context properties or system information."""
        if self.disabled:
            return None

        msg = {
            "properties": dict(properties or {}),
            "timestamp": None,
            "distinct_id": distinct_id,
            "event": event,
            "uuid": None,
        }
        return self._enqueue(msg)

    def _enqueue(self, msg) -> Optional[str]:
        timestamp = msg["timestamp"]
        if timestamp is None:
            timestamp = datetime.now(tz=tzutc())

        if isinstance(timestamp, datetime):
            timestamp = guess_timezone(timestamp).isoformat()
        msg["timestamp"] = timestamp

        uuid = msg.pop("uuid", None)
        # Always send a uuid, so we can always return one
        msg["uuid"] = stringify_id(uuid) if uuid else stringify_id(uuid4())
        sent_uuid = msg["uuid"]

        msg["properties"]["$lib"] = "hogclient-python"
        msg["properties"]["$lib_version"] = VERSION

        if self.super_properties:
            msg["properties"] = {**msg["properties"], **self.super_properties}

        msg["distinct_id"] = stringify_id(msg.get("distinct_id", None))

        msg = clean(msg)

        self.log.debug("queueing: %s", msg)

        if self.test_mode:
            with self._captured_events_lock:
                self._captured_events.append(msg)
            return sent_uuid

        if not self.pool.send(msg):
            return None

        self.log.debug("enqueued %s.", msg["event"])
        return sent_uuid

    @property
    def captured_events(self) -> List[Dict[str, Any]]:
        """Events captured so far in test mode, oldest first."""
        with self._captured_events_lock:
            return list(self._captured_events)

    def clear_captured_events(self):
        with self._captured_events_lock:
            self._captured_events = []

    def check(
        self,
        key: str,
        distinct_id: Optional[ID_TYPES] = None,
        **kwargs: Unpack[OptionalFlagArgs],
    ) -> EvalResult:
        """
        Evaluate a feature flag, returning a result instead of raising.

        Local evaluation is tried first. Unless `only_evaluate_locally` is set,
        anything short of a local match falls back to the remote `/flags`
        endpoint. A match captures a `$feature_flag_called` event (once per
        distinct id, flag and value) and sets `$feature/<key>` in the context.

        Args:
            key: The feature flag key.
            distinct_id: The distinct ID of the user. Read from the context when omitted.
            person_properties: A dictionary of person properties.
            groups: A dictionary of group information.
            group_properties: A dictionary of group properties.
            only_evaluate_locally: Whether to only evaluate locally.
            send_feature_flag_events: Whether to send feature flag events.

        Examples:
            ```python
            result = client.check('beta-feature', 'user123')
            if isinstance(result, Matched) and result.value:
                ...
            ```
        """
        if self.disabled:
            return LocalEvaluationUnavailable(key, CLIENT_DISABLED)

        options = self._eval_options(distinct_id, kwargs)
        if isinstance(options, InvalidRequest):
            return InvalidRequest(key, options.reason)

        result = evaluate_flag(
            self.poller.get_feature_flags(),
            key,
            options,
            self.poller.local_evaluation_enabled,
        )

        if not isinstance(result, Matched) and not options.only_evaluate_locally:
            result = self._evaluate_remotely(key, options)

        if isinstance(result, Matched):
            if kwargs.get("send_feature_flag_events", True):
                self._capture_feature_flag_called(
                    options.distinct_id,
                    key,
                    result.value,
                    result.locally_evaluated,
                    dict(options.groups),
                )
            self.set_context({f"$feature/{key}": result.value})
        else:
            self.log.debug(f"[FEATURE FLAGS] {result.message}")

        return result

    def check_or_raise(
        self,
        key: str,
        distinct_id: Optional[ID_TYPES] = None,
        **kwargs: Unpack[OptionalFlagArgs],
    ) -> FlagValue:
        """
        Like `check`, but returns the flag value or raises the result's error.

        Raises:
            FeatureFlagError: a subclass matching the result, with the same message.
        """
        result = self.check(key, distinct_id, **kwargs)
        if isinstance(result, Matched):
            return result.value
        raise result.to_exception()

    def get_feature_flag(
        self,
        key: str,
        distinct_id: Optional[ID_TYPES] = None,
        **kwargs: Unpack[OptionalFlagArgs],
    ) -> Optional[FlagValue]:
        """
        The flag value for the user: a variant, True or False. None when the
        flag could not be evaluated.
        """
        return self.check(key, distinct_id, **kwargs).get_value()

    def feature_enabled(
        self,
        key: str,
        distinct_id: Optional[ID_TYPES] = None,
        **kwargs: Unpack[OptionalFlagArgs],
    ) -> Optional[bool]:
        response = self.get_feature_flag(key, distinct_id, **kwargs)

        if response is None:
            return None
        return bool(response)

    def get_all_flags(
        self,
        distinct_id: Optional[ID_TYPES] = None,
        **kwargs: Unpack[OptionalFlagArgs],
    ) -> Optional[Dict[str, FlagValue]]:
        """
        Evaluate every known flag for a user.

        Flags that could not be evaluated locally are fetched remotely, unless
        `only_evaluate_locally` is set. Returns None when nothing could be
        evaluated at all.

        Raises:
            MissingDistinctIdError: no distinct id was passed or found in the context.
        """
        if self.disabled:
            return None

        options = self._eval_options(distinct_id, kwargs)
        if isinstance(options, InvalidRequest):
            raise options.to_exception()

        results = evaluate_all_flags(
            self.poller.get_feature_flags(),
            options,
            self.poller.local_evaluation_enabled,
        )
        values = flag_values(results)

        if options.only_evaluate_locally or (results and not failed_flags(results)):
            return values

        try:
            remote_flags = self._request_flags(options)
        except Exception as e:
            self.log.warning(f"[FEATURE FLAGS] Unable to get flags remotely: {e}")
            return values or None

        values.update(
            {key: remote_flag_value(detail) for key, detail in remote_flags.items()}
        )
        return values

    def get_flags_decision(
        self,
        distinct_id: Optional[ID_TYPES] = None,
        **kwargs: Unpack[OptionalFlagArgs],
    ) -> Dict[str, Any]:
        """
        The raw `flags` map returned by remote evaluation.

        Raises:
            MissingDistinctIdError: no distinct id was passed or found in the context.
            UnexpectedResponseError: the server answered without a `flags` map.
        """
        options = self._eval_options(distinct_id, kwargs)
        if isinstance(options, InvalidRequest):
            raise options.to_exception()
        return self._request_flags(options)

    def load_feature_flags(self):
        """Ask the poller to fetch flag definitions now."""
        self.poller.refresh()

    def wait_for_feature_flags(self, timeout: Optional[float] = None) -> bool:
        """Block until the first definitions poll has completed. Returns False on timeout."""
        if not self.poller.local_evaluation_enabled:
            return False
        return self.poller.wait_for_polls(1, timeout)

    def can_evaluate_locally(self, key: str) -> bool:
        return self.poller.can_evaluate_locally(key)

    def feature_flag_definitions(self) -> DefinitionSnapshot:
        return self.poller.get_feature_flags()

    def _eval_options(self, distinct_id, kwargs):
        distinct_id = stringify_id(distinct_id) or stringify_id(
            self.get_context().get("distinct_id")
        )
        if not distinct_id:
            return InvalidRequest(None, MISSING_DISTINCT_ID)

        return EvalOptions(
            distinct_id=distinct_id,
            person_properties=kwargs.get("person_properties") or {},
            groups=kwargs.get("groups") or {},
            group_properties=kwargs.get("group_properties") or {},
            only_evaluate_locally=kwargs.get("only_evaluate_locally", False),
        )

    def _request_flags(self, options: EvalOptions) -> Dict[str, Any]:
        body = {
            "distinct_id": options.distinct_id,
            "person_properties": dict(options.person_properties),
            "groups": dict(options.groups),
            "group_properties": dict(options.group_properties),
        }
        response = self.transport.evaluate_remote(
            body, timeout=self.config.feature_flags_request_timeout / 1000
        )

        if response.status != 200:
            raise UnexpectedResponseError("Unexpected response", response)

        if not isinstance(response.body, dict) or not isinstance(
            response.body.get("flags"), dict
        ):
            raise UnexpectedResponseError(
                'Expected response body to have "flags" key', response.body
            )

        if "feature_flags" in (response.body.get("quotaLimited") or []):
            raise UnexpectedResponseError(
                "Feature flags quota limited", response.body
            )

        return response.body["flags"]

    def _evaluate_remotely(self, key: str, options: EvalOptions) -> EvalResult:
        try:
            flags = self._request_flags(options)
        except Exception as e:
            self.log.warning(f"[FEATURE FLAGS] Unable to get flag remotely: {e}")
            reason = e.message if isinstance(e, HogClientError) else repr(e)
            return EvaluationError(key, reason)

        if key not in flags:
            return NotFound(key)

        return Matched(key, remote_flag_value(flags[key]), locally_evaluated=False)

    def _capture_feature_flag_called(
        self,
        distinct_id: str,
        key: str,
        response: FlagValue,
        flag_was_locally_evaluated: bool,
        groups: Dict[str, str],
    ):
        feature_flag_reported_key = f"{key}_{response}"

        if (
            feature_flag_reported_key
            not in self.distinct_ids_feature_flags_reported[distinct_id]
        ):
            properties: dict[str, Any] = {
                "$feature_flag": key,
                "$feature_flag_response": response,
                "locally_evaluated": flag_was_locally_evaluated,
                f"$feature/{key}": response,
            }

            self.capture(
                "$feature_flag_called",
                distinct_id=distinct_id,
                properties=properties,
                groups=groups,
            )
            self.distinct_ids_feature_flags_reported[distinct_id].add(
                feature_flag_reported_key
            )

    def flush(
        self, blocking: bool = False, timeout: float = 5.0
    ) -> Optional[FlushResult]:
        """
        Send everything the senders have buffered.

        Non-blocking flushes return None immediately. Blocking flushes wait up
        to `timeout` seconds and return a `FlushResult` listing the senders
        that failed.

        Examples:
            ```python
            result = client.flush(blocking=True, timeout=2)
            if not result.success:
                ...
            ```
        """
        if self.pool is None:
            return FlushResult() if blocking else None
        return self.pool.flush(blocking=blocking, timeout=timeout)

    def shutdown(self):
        """
        Flush all messages and cleanly shutdown the client. Call this before the process ends in serverless environments to avoid data loss.
        """
        if self._is_shutdown:
            return
        self._is_shutdown = True

        self.poller.stop()
        if self.pool is not None:
            self.pool.shutdown()
