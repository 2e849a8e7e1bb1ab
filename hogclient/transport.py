"""
Transport interface used by the poller, the sender pool and the client.

The core never talks HTTP directly. Anything implementing `Transport` can be
passed to `Client(transport=...)`; `HTTPTransport` is the default.

Usage:

    class RecordingTransport:
        def fetch_flag_definitions(self, timeout):
            return TransportResponse(200, {"flags": [], "group_type_mapping": {}, "cohorts": {}})

        def send_batch(self, events):
            return TransportResponse(200, {"status": "Ok"})

        def evaluate_remote(self, body, timeout):
            return TransportResponse(200, {"flags": {}})

    client = Client("<project_api_key>", transport=RecordingTransport())
"""

from typing import Any, Dict, List, NamedTuple, Optional, Protocol, runtime_checkable

from hogclient.request import (
    batch_post,
    determine_server_host,
    flags,
    local_evaluation,
    response_body,
)


class TransportResponse(NamedTuple):
    status: int
    body: Any


@runtime_checkable
class Transport(Protocol):
    """
    Capability interface for the three outbound calls the SDK makes.

    Implementations return a `TransportResponse` for anything the server
    answered, and raise for transport-level failures (connection errors,
    timeouts). Callers decide what a non-200 status means.
    """

    def fetch_flag_definitions(self, timeout: float) -> TransportResponse:
        """Fetch the flag ruleset used for local evaluation."""
        ...

    def send_batch(self, events: List[Dict[str, Any]]) -> TransportResponse:
        """Deliver one batch of events."""
        ...

    def evaluate_remote(self, body: Dict[str, Any], timeout: float) -> TransportResponse:
        """Evaluate flags server side for the subject described by `body`."""
        ...


class HTTPTransport(object):
    def __init__(
        self,
        api_key: str,
        host: Optional[str] = None,
        personal_api_key: Optional[str] = None,
        gzip: bool = False,
        timeout: float = 15,
    ):
        self.api_key = api_key
        self.host = determine_server_host(host)
        self.personal_api_key = personal_api_key
        self.gzip = gzip
        self.timeout = timeout

    def fetch_flag_definitions(self, timeout: float) -> TransportResponse:
        res = local_evaluation(
            self.personal_api_key, self.api_key, self.host, timeout=timeout
        )
        return TransportResponse(res.status_code, response_body(res))

    def send_batch(self, events: List[Dict[str, Any]]) -> TransportResponse:
        res = batch_post(
            self.api_key,
            self.host,
            gzip=self.gzip,
            timeout=self.timeout,
            batch=events,
        )
        return TransportResponse(res.status_code, response_body(res))

    def evaluate_remote(self, body: Dict[str, Any], timeout: float) -> TransportResponse:
        res = flags(self.api_key, self.host, gzip=self.gzip, timeout=timeout, **body)
        return TransportResponse(res.status_code, response_body(res))
