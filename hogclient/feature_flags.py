import hashlib
import logging
from typing import Any, Dict, Iterable, Optional

from hogclient import utils
from hogclient.types import (
    FLAGS_NOT_LOADED,
    LOCAL_EVALUATION_DISABLED,
    NO_FLAGS_AVAILABLE,
    DefinitionSnapshot,
    EvalOptions,
    EvalResult,
    EvaluationError,
    FlagValue,
    LocalEvaluationUnavailable,
    Matched,
    NotFound,
)

__LONG_SCALE__ = float(0xFFFFFFFFFFFFFFF)

log = logging.getLogger("hogclient")

NUMERIC_OPERATORS = ("gt", "gte", "lt", "lte")


# This function takes a distinct_id and a feature flag key and returns a float between 0 and 1.
# Given the same distinct_id and key, it'll always return the same float. These floats are
# uniformly distributed between 0 and 1, so if we want to show this feature to 20% of traffic
# we can do _hash(key, distinct_id) < 0.2
def _hash(key: str, distinct_id: str, salt: str = "") -> float:
    hash_key = f"{key}.{distinct_id}{salt}"
    hash_val = int(hashlib.sha1(hash_key.encode("utf-8")).hexdigest()[:15], 16)
    return hash_val / __LONG_SCALE__


def _variants(feature_flag) -> list:
    # Some filters can be explicitly set to null, which require accessing variants like so
    return ((feature_flag.get("filters") or {}).get("multivariate") or {}).get(
        "variants"
    ) or []


def variant_lookup_table(feature_flag):
    lookup_table = []
    value_min = 0
    for variant in _variants(feature_flag):
        value_max = value_min + (variant.get("rollout_percentage") or 0) / 100
        lookup_table.append(
            {"value_min": value_min, "value_max": value_max, "key": variant["key"]}
        )
        value_min = value_max
    return lookup_table


def get_matching_variant(flag, distinct_id) -> Optional[str]:
    hash_value = _hash(flag["key"], distinct_id, salt="variant")
    for variant in variant_lookup_table(flag):
        if hash_value >= variant["value_min"] and hash_value < variant["value_max"]:
            return variant["key"]
    return None


def match_property(property, property_values) -> bool:
    """
    Match a single property filter against the subject's properties.

    Anything that can't be compared (wrong operand types, unknown operators)
    is a non-match, never an error. Group properties are not resolved yet and
    always behave as if the property were missing.
    """
    key = property.get("key")
    operator = property.get("operator")
    value = property.get("value")

    if (property.get("type") or "person") == "person":
        override_value = property_values.get(key)
    else:
        override_value = None

    if operator == "exact":
        return override_value == value

    if operator == "is_not":
        return override_value != value

    if operator == "is_set":
        return override_value is not None

    if operator == "is_not_set":
        return override_value is None

    if operator in ("icontains", "not_icontains"):
        if not isinstance(override_value, str) or not isinstance(value, str):
            return False
        contains = utils.str_icontains(override_value, value)
        return contains if operator == "icontains" else not contains

    if operator in NUMERIC_OPERATORS:
        if not utils.is_number(override_value) or not utils.is_number(value):
            return False
        if operator == "gt":
            return override_value > value
        elif operator == "gte":
            return override_value >= value
        elif operator == "lt":
            return override_value < value
        else:
            return override_value <= value

    log.debug(f"Unknown operator {operator}, treating as a non-match")
    return False


def is_condition_match(feature_flag, distinct_id, condition, properties) -> bool:
    for prop in condition.get("properties") or []:
        if not match_property(prop, properties):
            return False

    rollout_percentage = condition.get("rollout_percentage")
    if rollout_percentage is None:
        return True

    if not utils.is_number(rollout_percentage):
        return False

    return _hash(feature_flag["key"], distinct_id) <= (rollout_percentage / 100)


def match_feature_flag_properties(flag, distinct_id, properties) -> FlagValue:
    # An empty condition list never matches: flags have to be explicit to activate
    flag_conditions = (flag.get("filters") or {}).get("groups") or []

    for condition in flag_conditions:
        # if any one condition resolves to True, we can shortcircuit and return
        # the matching variant
        if is_condition_match(flag, distinct_id, condition, properties):
            variant_override = condition.get("variant")
            if variant_override:
                return variant_override
            if _variants(flag):
                return get_matching_variant(flag, distinct_id) or True
            return True

    return False


def compute_flag_value(feature_flag, options: EvalOptions) -> FlagValue:
    if not feature_flag.get("active"):
        return False

    return match_feature_flag_properties(
        feature_flag, options.distinct_id, options.person_properties or {}
    )


def _safely_compute(key: str, feature_flag, options: EvalOptions) -> EvalResult:
    try:
        value = compute_flag_value(feature_flag, options)
    except Exception as e:
        log.warning(f"[FEATURE FLAGS] Error evaluating flag {key}: {e!r}")
        return EvaluationError(key, repr(e))

    log.debug(f"Successfully computed flag locally: {key} -> {value}")
    return Matched(key, value, locally_evaluated=True)


def _local_evaluation_unavailable(
    snapshot: DefinitionSnapshot, key: Optional[str], local_evaluation_enabled: bool
) -> Optional[LocalEvaluationUnavailable]:
    if not local_evaluation_enabled:
        return LocalEvaluationUnavailable(key, LOCAL_EVALUATION_DISABLED)
    if snapshot.last_updated is None:
        return LocalEvaluationUnavailable(key, FLAGS_NOT_LOADED)
    if not snapshot.flags:
        return LocalEvaluationUnavailable(key, NO_FLAGS_AVAILABLE)
    return None


def evaluate_flag(
    snapshot: DefinitionSnapshot,
    key: str,
    options: EvalOptions,
    local_evaluation_enabled: bool = True,
) -> EvalResult:
    """
    Evaluate one flag against the given snapshot without touching the network.

    Returns `Matched` with the flag value, `NotFound` when the snapshot has no
    such flag, `LocalEvaluationUnavailable` when there is nothing to evaluate
    against, or `EvaluationError` when the definition could not be evaluated.
    """
    unavailable = _local_evaluation_unavailable(
        snapshot, key, local_evaluation_enabled
    )
    if unavailable:
        return unavailable

    feature_flag = snapshot.get(key)
    if feature_flag is None:
        return NotFound(key)

    return _safely_compute(key, feature_flag, options)


def evaluate_all_flags(
    snapshot: DefinitionSnapshot,
    options: EvalOptions,
    local_evaluation_enabled: bool = True,
) -> Dict[str, EvalResult]:
    """Evaluate every flag in the snapshot; one broken flag never stops the rest."""
    if _local_evaluation_unavailable(snapshot, None, local_evaluation_enabled):
        return {}

    results: Dict[str, EvalResult] = {}
    for feature_flag in snapshot.flags:
        key = feature_flag.get("key")
        if key is None or key in results:
            continue
        results[key] = _safely_compute(key, feature_flag, options)
    return results


def flag_values(results: Dict[str, EvalResult]) -> Dict[str, Any]:
    return {
        key: result.value
        for key, result in results.items()
        if isinstance(result, Matched)
    }


def failed_flags(results: Dict[str, EvalResult]) -> Iterable[str]:
    return [key for key, result in results.items() if not isinstance(result, Matched)]
