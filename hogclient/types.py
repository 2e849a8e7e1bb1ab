from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple, TypeAlias, Union

from hogclient.errors import (
    FeatureFlagError,
    FlagEvaluationError,
    FlagNotFoundError,
    LocalEvaluationUnavailableError,
    MissingDistinctIdError,
)

FlagValue: TypeAlias = bool | str

# Reasons reported by LocalEvaluationUnavailable
LOCAL_EVALUATION_DISABLED = "local_evaluation_disabled"
FLAGS_NOT_LOADED = "flags_not_loaded"
NO_FLAGS_AVAILABLE = "no_flags_available"
CLIENT_DISABLED = "client_disabled"

def _empty_mapping() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True)
class DefinitionSnapshot:
    """
    The flag ruleset as of the last successful poll.

    Snapshots are never modified once built. A new poll produces a new
    snapshot and the store swaps the reference.
    """

    flags: Tuple[dict, ...] = ()
    group_type_mapping: Mapping[str, str] = field(default_factory=_empty_mapping)
    cohorts: Mapping[str, Any] = field(default_factory=_empty_mapping)
    last_updated: Optional[datetime] = None
    _by_key: Mapping[str, dict] = field(
        default_factory=_empty_mapping, repr=False, compare=False
    )

    @classmethod
    def build(
        cls, flags, group_type_mapping, cohorts, last_updated: datetime
    ) -> "DefinitionSnapshot":
        flags = tuple(flag for flag in (flags or []) if isinstance(flag, dict))
        by_key = {}
        for flag in flags:
            if flag.get("key") is not None and flag["key"] not in by_key:
                by_key[flag["key"]] = flag
        return cls(
            flags=flags,
            group_type_mapping=MappingProxyType(dict(group_type_mapping or {})),
            cohorts=MappingProxyType(dict(cohorts or {})),
            last_updated=last_updated,
            _by_key=MappingProxyType(by_key),
        )

    def get(self, key: str) -> Optional[dict]:
        return self._by_key.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._by_key


@dataclass(frozen=True)
class EvalOptions:
    distinct_id: str
    person_properties: Mapping[str, Any] = field(default_factory=_empty_mapping)
    groups: Mapping[str, Any] = field(default_factory=_empty_mapping)
    group_properties: Mapping[str, Any] = field(default_factory=_empty_mapping)
    only_evaluate_locally: bool = False


@dataclass(frozen=True)
class Matched:
    key: str
    value: FlagValue
    locally_evaluated: bool = True

    def get_value(self) -> FlagValue:
        return self.value


class _Unmatched:
    error_class = FeatureFlagError

    def get_value(self) -> None:
        return None

    def to_exception(self) -> FeatureFlagError:
        return self.error_class(self)


@dataclass(frozen=True)
class NotFound(_Unmatched):
    key: str

    error_class = FlagNotFoundError

    @property
    def message(self) -> str:
        return f"Feature flag {self.key} was not found"


@dataclass(frozen=True)
class EvaluationError(_Unmatched):
    key: str
    reason: str

    error_class = FlagEvaluationError

    @property
    def message(self) -> str:
        return f"Error evaluating feature flag {self.key}: {self.reason}"


@dataclass(frozen=True)
class LocalEvaluationUnavailable(_Unmatched):
    key: Optional[str]
    reason: str

    error_class = LocalEvaluationUnavailableError

    @property
    def message(self) -> str:
        return f"Local evaluation failed for feature flag {self.key}: {self.reason}"


@dataclass(frozen=True)
class InvalidRequest(_Unmatched):
    key: Optional[str]
    reason: str

    error_class = MissingDistinctIdError

    @property
    def message(self) -> str:
        return self.reason


EvalResult = Union[
    Matched, NotFound, EvaluationError, LocalEvaluationUnavailable, InvalidRequest
]


@dataclass(frozen=True)
class FlushFailure:
    index: int
    kind: str  # "api_error", "timeout" or "exited"
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class FlushResult:
    failures: Tuple[FlushFailure, ...] = ()

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def status(self) -> str:
        return "flushed" if self.success else "some_flushes_failed"
