import numbers
from datetime import datetime
from typing import Any, Dict, Optional, TypedDict, Union
from uuid import UUID

from typing_extensions import NotRequired  # For Python < 3.11 compatibility

ID_TYPES = Union[numbers.Number, str, UUID, int]


class OptionalCaptureArgs(TypedDict):
    """Optional arguments for the capture method.

    Args:
        distinct_id: Unique identifier for the person associated with this event. If not set, the
            `distinct_id` key of the current context is used; capturing without either raises
            `MissingDistinctIdError`.
        properties: Dictionary of properties to track with the event
        timestamp: When the event occurred (defaults to current time)
        uuid: Unique identifier for this specific event. If not provided, one is generated. The event
            UUID is returned, so you can correlate it with actions in your app.
        groups: Group identifiers to associate with this event (format: {group_type: group_key})
    """

    distinct_id: NotRequired[Optional[ID_TYPES]]
    properties: NotRequired[Optional[Dict[str, Any]]]
    timestamp: NotRequired[Optional[Union[datetime, str]]]
    uuid: NotRequired[Optional[str]]
    groups: NotRequired[Optional[Dict[str, str]]]


class OptionalFlagArgs(TypedDict):
    """Optional arguments for the flag check methods.

    Args:
        person_properties: Properties of the person, used by property filters
        groups: Group identifiers of the subject (format: {group_type: group_key})
        group_properties: Properties of each group, keyed by group type
        only_evaluate_locally: Never fall back to remote evaluation
        send_feature_flag_events: Whether to capture `$feature_flag_called`. Defaults to True
    """

    person_properties: NotRequired[Optional[Dict[str, Any]]]
    groups: NotRequired[Optional[Dict[str, str]]]
    group_properties: NotRequired[Optional[Dict[str, Dict[str, Any]]]]
    only_evaluate_locally: NotRequired[bool]
    send_feature_flag_events: NotRequired[bool]
