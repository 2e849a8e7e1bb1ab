import json
import logging
from datetime import date, datetime
from gzip import GzipFile
from io import BytesIO
from typing import Any, Optional, Union

import requests
from dateutil.tz import tzutc
from urllib3.util.retry import Retry

from hogclient.utils import remove_trailing_slash
from hogclient.version import VERSION

# Retry on both connect and read errors
# by default read errors will only retry idempotent HTTP methods (so not POST)
adapter = requests.adapters.HTTPAdapter(
    max_retries=Retry(
        total=2,
        connect=2,
        read=2,
    )
)
_session = requests.sessions.Session()
_session.mount("https://", adapter)

US_INGESTION_ENDPOINT = "https://us.i.posthog.com"
EU_INGESTION_ENDPOINT = "https://eu.i.posthog.com"
DEFAULT_HOST = US_INGESTION_ENDPOINT
USER_AGENT = "hogclient-python/" + VERSION

LOCAL_EVALUATION_PATH = "/api/feature_flag/local_evaluation/"


def determine_server_host(host: Optional[str]) -> str:
    """Determines the server host to use."""
    host_or_default = host or DEFAULT_HOST
    trimmed_host = remove_trailing_slash(host_or_default)
    if trimmed_host in ("https://app.posthog.com", "https://us.posthog.com"):
        return US_INGESTION_ENDPOINT
    elif trimmed_host == "https://eu.posthog.com":
        return EU_INGESTION_ENDPOINT
    else:
        return host_or_default


def post(
    api_key: str,
    host: Optional[str] = None,
    path=None,
    gzip: bool = False,
    timeout: Union[int, float] = 15,
    **kwargs,
) -> requests.Response:
    """Post the `kwargs` to the API"""
    log = logging.getLogger("hogclient")
    body = kwargs
    body["sentAt"] = datetime.now(tz=tzutc()).isoformat()
    url = remove_trailing_slash(host or DEFAULT_HOST) + path
    body["api_key"] = api_key
    data = json.dumps(body, cls=DatetimeSerializer)
    log.debug("making request: %s to url: %s", data, url)
    headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
    if gzip:
        headers["Content-Encoding"] = "gzip"
        buf = BytesIO()
        with GzipFile(fileobj=buf, mode="w") as gz:
            # 'data' was produced by json.dumps(),
            # whose default encoding is utf-8.
            gz.write(data.encode("utf-8"))
        data = buf.getvalue()

    res = _session.post(url, data=data, headers=headers, timeout=timeout)

    if res.status_code == 200:
        log.debug("data uploaded successfully")

    return res


def get(
    api_key: str,
    url: str,
    host: Optional[str] = None,
    timeout: Optional[Union[int, float]] = None,
) -> requests.Response:
    url = remove_trailing_slash(host or DEFAULT_HOST) + url
    return _session.get(
        url,
        headers={"Authorization": "Bearer %s" % api_key, "User-Agent": USER_AGENT},
        timeout=timeout,
    )


def batch_post(
    api_key: str,
    host: Optional[str] = None,
    gzip: bool = False,
    timeout: Union[int, float] = 15,
    **kwargs,
) -> requests.Response:
    """Post the `kwargs` to the batch API endpoint for events"""
    return post(api_key, host, "/batch/", gzip, timeout, **kwargs)


def flags(
    api_key: str,
    host: Optional[str] = None,
    gzip: bool = False,
    timeout: Union[int, float] = 15,
    **kwargs,
) -> requests.Response:
    """Post the `kwargs` to the flags API endpoint"""
    return post(api_key, host, "/flags/?v=2", gzip, timeout, **kwargs)


def local_evaluation(
    personal_api_key: str,
    project_api_key: str,
    host: Optional[str] = None,
    timeout: Optional[Union[int, float]] = None,
) -> requests.Response:
    """Get the flag definitions used for local evaluation"""
    return get(
        personal_api_key,
        f"{LOCAL_EVALUATION_PATH}?token={project_api_key}&send_cohorts",
        host,
        timeout,
    )


def response_body(res: requests.Response) -> Any:
    """The decoded JSON body of a response, or its raw text."""
    try:
        return res.json()
    except ValueError:
        return res.text


def api_error(status: Union[int, str], body: Any) -> "APIError":
    if isinstance(body, dict) and "detail" in body:
        return APIError(status, body["detail"])
    return APIError(status, str(body))


class APIError(Exception):
    def __init__(self, status: Union[int, str], message: str):
        self.message = message
        self.status = status

    def __str__(self):
        msg = "[hogclient] {0} ({1})"
        return msg.format(self.message, self.status)


class DatetimeSerializer(json.JSONEncoder):
    def default(self, obj: Any):
        if isinstance(obj, (date, datetime)):
            return obj.isoformat()

        return json.JSONEncoder.default(self, obj)
