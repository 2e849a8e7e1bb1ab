from typing import Any, Callable, Dict, Optional  # noqa: F401

from typing_extensions import Unpack

from hogclient.args import ID_TYPES, OptionalCaptureArgs, OptionalFlagArgs
from hogclient.client import Client
from hogclient.context import (
    ALL,
    clear_context,
    get_context as inner_get_context,
    new_context as inner_new_context,
    set_context as inner_set_context,
)
from hogclient.errors import (  # noqa: F401
    ConfigurationError,
    FeatureFlagError,
    FlagEvaluationError,
    FlagNotFoundError,
    HogClientError,
    LocalEvaluationUnavailableError,
    MissingDistinctIdError,
    UnexpectedResponseError,
)
from hogclient.types import (  # noqa: F401
    EvalResult,
    EvaluationError,
    FlagValue,
    FlushResult,
    InvalidRequest,
    LocalEvaluationUnavailable,
    Matched,
    NotFound,
)
from hogclient.version import VERSION

__version__ = VERSION

"""Context management."""


def new_context(fresh=False):
    return inner_new_context(fresh=fresh)


def set_context(properties: Dict[str, Any], event: str = ALL):
    """
    Set properties shared by every client in the current context.

    Example:
        hogclient.set_context({"distinct_id": "user123"})
        hogclient.set_context({"$plan": "pro"}, event="purchase")
    """
    return inner_set_context(ALL, properties, event=event)


def get_context(event: str = ALL) -> Dict[str, Any]:
    return inner_get_context(ALL, event)


"""Settings."""
api_key = None  # type: Optional[str]
host = None  # type: Optional[str]
personal_api_key = None  # type: Optional[str]
on_error = None  # type: Optional[Callable]
debug = False  # type: bool
disabled = False  # type: bool
test_mode = False  # type: bool
enable_local_evaluation = True  # type: bool
feature_flags_poll_interval = 30_000  # type: int
feature_flags_request_timeout = 3_000  # type: int
max_batch_events = 100  # type: int
max_batch_time_ms = 10_000  # type: int
sender_pool_size = None  # type: Optional[int]
super_properties = None  # type: Optional[Dict]

default_client = None  # type: Optional[Client]


def capture(event: str, **kwargs: Unpack[OptionalCaptureArgs]) -> Optional[str]:
    """
    Capture an event through the default client.

    Example:
        hogclient.capture("movie played", distinct_id="user123", properties={"title": "Heat"})
    """
    return _proxy("capture", event, **kwargs)


def bare_capture(
    event: str, distinct_id: ID_TYPES, properties: Optional[Dict[str, Any]] = None
) -> Optional[str]:
    return _proxy("bare_capture", event, distinct_id, properties)


def check(
    key: str, distinct_id: Optional[ID_TYPES] = None, **kwargs: Unpack[OptionalFlagArgs]
) -> EvalResult:
    """
    Evaluate a feature flag, returning `Matched` or a result describing why
    there is no value.

    Example:
        result = hogclient.check("beta-feature", "user123")
    """
    return _proxy("check", key, distinct_id, **kwargs)


def check_or_raise(
    key: str, distinct_id: Optional[ID_TYPES] = None, **kwargs: Unpack[OptionalFlagArgs]
) -> FlagValue:
    return _proxy("check_or_raise", key, distinct_id, **kwargs)


def get_feature_flag(
    key: str, distinct_id: Optional[ID_TYPES] = None, **kwargs: Unpack[OptionalFlagArgs]
) -> Optional[FlagValue]:
    return _proxy("get_feature_flag", key, distinct_id, **kwargs)


def feature_enabled(
    key: str, distinct_id: Optional[ID_TYPES] = None, **kwargs: Unpack[OptionalFlagArgs]
) -> Optional[bool]:
    """
    Whether a feature flag is enabled for the user, None when it can't be evaluated.

    Example:
        if hogclient.feature_enabled("beta-feature", "user123"):
            ...
    """
    return _proxy("feature_enabled", key, distinct_id, **kwargs)


def get_all_flags(
    distinct_id: Optional[ID_TYPES] = None, **kwargs: Unpack[OptionalFlagArgs]
) -> Optional[Dict[str, FlagValue]]:
    return _proxy("get_all_flags", distinct_id, **kwargs)


def get_flags_decision(
    distinct_id: Optional[ID_TYPES] = None, **kwargs: Unpack[OptionalFlagArgs]
) -> Dict[str, Any]:
    return _proxy("get_flags_decision", distinct_id, **kwargs)


def load_feature_flags():
    """Fetch flag definitions now instead of waiting for the next poll."""
    return _proxy("load_feature_flags")


def feature_flag_definitions():
    return _proxy("feature_flag_definitions")


def flush(blocking: bool = False, timeout: float = 5.0) -> Optional[FlushResult]:
    """Tell the client to flush."""
    return _proxy("flush", blocking=blocking, timeout=timeout)


def shutdown():
    """Flush all messages and cleanly shutdown the client"""
    _proxy("shutdown")


def setup():
    global default_client
    if not default_client:
        if not api_key:
            raise ConfigurationError("API key is required")
        options = dict(
            host=host,
            personal_api_key=personal_api_key,
            on_error=on_error,
            debug=debug,
            disabled=disabled,
            test_mode=test_mode,
            enable_local_evaluation=enable_local_evaluation,
            feature_flags_poll_interval=feature_flags_poll_interval,
            feature_flags_request_timeout=feature_flags_request_timeout,
            max_batch_events=max_batch_events,
            max_batch_time_ms=max_batch_time_ms,
            super_properties=super_properties,
        )
        if sender_pool_size is not None:
            options["sender_pool_size"] = sender_pool_size
        default_client = Client(api_key, **options)

    # always set incase user changes it
    default_client.disabled = disabled


def _proxy(method, *args, **kwargs):
    """Create a client if one doesn't exist and send to it."""
    setup()

    fn = getattr(default_client, method)
    return fn(*args, **kwargs)


__all__ = [
    "Client",
    "clear_context",
    "new_context",
    "set_context",
    "get_context",
    "capture",
    "bare_capture",
    "check",
    "check_or_raise",
    "get_feature_flag",
    "feature_enabled",
    "get_all_flags",
    "get_flags_decision",
    "load_feature_flags",
    "feature_flag_definitions",
    "flush",
    "shutdown",
    "setup",
    "VERSION",
]
