from typing import Any


class HogClientError(Exception):
    """Base class for errors raised by hogclient."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message


class ConfigurationError(HogClientError):
    pass


class UnexpectedResponseError(HogClientError):
    """An API call returned something we could not interpret."""

    def __init__(self, message: str, response: Any = None):
        super().__init__(message)
        self.response = response

    def __str__(self):
        return "{0}\n\n{1!r}".format(self.message, self.response)


class FeatureFlagError(HogClientError):
    """
    Raised by the raising flag-check variants.

    The exception wraps the structured result that would otherwise have been
    returned, so `str(error)` is always the result's own message.
    """

    def __init__(self, result: Any):
        super().__init__(result.message)
        self.result = result


class FlagNotFoundError(FeatureFlagError):
    pass


class FlagEvaluationError(FeatureFlagError):
    pass


class LocalEvaluationUnavailableError(FeatureFlagError):
    pass


class MissingDistinctIdError(FeatureFlagError):
    pass
