import os
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, Optional

from hogclient.errors import ConfigurationError


def _default_pool_size() -> int:
    return max(os.cpu_count() or 1, 2)


POSITIVE_INTEGERS = (
    "feature_flags_poll_interval",
    "feature_flags_request_timeout",
    "max_batch_events",
    "max_batch_time_ms",
    "sender_pool_size",
)


@dataclass
class Config:
    """
    Client settings.

    Intervals and timeouts suffixed `_ms` or documented as milliseconds are in
    milliseconds; `timeout` (the batch request timeout) is in seconds.
    """

    api_key: str
    host: Optional[str] = None
    personal_api_key: Optional[str] = None
    enable_local_evaluation: bool = True
    # milliseconds
    feature_flags_poll_interval: int = 30_000
    # milliseconds
    feature_flags_request_timeout: int = 3_000
    max_batch_events: int = 100
    max_batch_time_ms: int = 10_000
    sender_pool_size: int = field(default_factory=_default_pool_size)
    max_retries: int = 3
    timeout: float = 15
    gzip: bool = False
    debug: bool = False
    test_mode: bool = False
    disabled: bool = False
    super_properties: Optional[Dict[str, Any]] = None
    on_error: Optional[Callable] = None
    name: str = "default"

    @classmethod
    def from_options(cls, api_key: str, **options) -> "Config":
        known = {f.name for f in fields(cls)}
        unknown = set(options) - known
        if unknown:
            raise ConfigurationError(
                "Unknown configuration options: %s" % ", ".join(sorted(unknown))
            )
        return cls(api_key=api_key, **options).validate()

    @property
    def local_evaluation_enabled(self) -> bool:
        return bool(self.enable_local_evaluation and self.personal_api_key)

    def validate(self) -> "Config":
        if not self.api_key or not isinstance(self.api_key, str):
            raise ConfigurationError("api_key must be a non-empty string")

        for name in POSITIVE_INTEGERS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(
                    f"{name} must be a positive integer, got {value!r}"
                )

        if isinstance(self.max_retries, bool) or not isinstance(self.max_retries, int) or self.max_retries < 0:
            raise ConfigurationError(
                f"max_retries must be a non-negative integer, got {self.max_retries!r}"
            )

        if self.on_error is not None and not callable(self.on_error):
            raise ConfigurationError("on_error must be callable")

        return self
