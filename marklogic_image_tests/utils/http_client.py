"""HTTP sessions authenticated with Digest auth.

Sessions are not shared through any global state. A scenario opens a session for a given
base URL and credentials and passes it to every check that needs it.
"""

import contextlib
import dataclasses
import json
import logging
import pathlib as pl
import typing as tp
import urllib.parse

import requests
from requests import auth as rauth

from marklogic_image_tests.utils import errors
from marklogic_image_tests.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60

StatusSpec = int | tp.Iterable[int] | None


@dataclasses.dataclass(frozen=True)
class Credentials:
    username: str
    password: str = dataclasses.field(repr=False)

    @classmethod
    def from_files(
        cls, *, username_file: ttypes.FileType, password_file: ttypes.FileType
    ) -> "Credentials":
        """Read credentials from file-backed secrets."""
        username = pl.Path(username_file).read_text(encoding="utf-8").strip()
        password = pl.Path(password_file).read_text(encoding="utf-8").strip()
        return cls(username=username, password=password)


def resolve_credentials(
    *,
    username: str = "",
    password: str = "",
    username_file: ttypes.FileType = "",
    password_file: ttypes.FileType = "",
) -> Credentials:
    """Return credentials from either inline values or files, never from a mix of both."""
    has_inline = bool(username or password)
    has_files = bool(username_file or password_file)
    if has_inline and has_files:
        msg = "Credentials can come either from inline values or from files, not both."
        raise ValueError(msg)
    if has_files:
        if not (username_file and password_file):
            msg = "Both username and password files are needed."
            raise ValueError(msg)
        return Credentials.from_files(username_file=username_file, password_file=password_file)
    if not (username and password):
        msg = "Both username and password are needed."
        raise ValueError(msg)
    return Credentials(username=username, password=password)


@dataclasses.dataclass(frozen=True)
class Response:
    method: str
    url: str
    status: int
    body: str
    headers: dict[str, str]

    def json(self) -> tp.Any:
        try:
            return json.loads(self.body)
        except ValueError as exc:
            msg = f"Response of `{self.method} {self.url}` is not JSON: {self.body[:500]}"
            raise errors.ResponseFormatError(msg) from exc

    @classmethod
    def from_requests(cls, response: requests.Response) -> "Response":
        return cls(
            method=response.request.method or "",
            url=response.url,
            status=response.status_code,
            body=response.text,
            headers=dict(response.headers),
        )


def check_status(response: Response, expected_status: StatusSpec) -> None:
    """Check HTTP status, `None` means that any status is accepted."""
    if expected_status is None:
        return
    expected = (
        {expected_status} if isinstance(expected_status, int) else set(expected_status)
    )
    if response.status not in expected:
        raise errors.AssertionMismatch(
            label=f"HTTP status of `{response.method} {response.url}` ({response.body[:500]})",
            expected=sorted(expected) if len(expected) > 1 else expected.pop(),
            actual=response.status,
        )


class AuthSession:
    """HTTP client bound to one base URL and one set of credentials."""

    def __init__(
        self,
        base_url: str,
        credentials: Credentials,
        *,
        session_id: str = "",
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.session_id = session_id or f"{credentials.username}@{self.base_url}"
        self.timeout = timeout
        self._session = requests.Session()
        self._session.auth = rauth.HTTPDigestAuth(credentials.username, credentials.password)

    def url(self, path: str) -> str:
        return urllib.parse.urljoin(f"{self.base_url}/", path.lstrip("/"))

    def request(
        self,
        method: str,
        path: str,
        *,
        body: str | bytes | dict | None = None,
        json_body: tp.Any = None,
        params: dict | None = None,
        headers: dict | None = None,
        expected_status: StatusSpec = None,
        timeout: float | None = None,
    ) -> Response:
        """Send request and return the response.

        Any status code is accepted unless `expected_status` is given.
        """
        url = self.url(path)
        LOGGER.debug(f"[{self.session_id}] {method} {url}")
        response = Response.from_requests(
            self._session.request(
                method,
                url,
                data=body,
                json=json_body,
                params=params,
                headers=headers,
                timeout=timeout or self.timeout,
            )
        )
        LOGGER.debug(f"[{self.session_id}] {method} {url} -> {response.status}")
        check_status(response=response, expected_status=expected_status)
        return response

    def get(self, path: str, **kwargs: tp.Any) -> Response:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs: tp.Any) -> Response:
        return self.request("POST", path, **kwargs)

    def put(self, path: str, **kwargs: tp.Any) -> Response:
        return self.request("PUT", path, **kwargs)

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "AuthSession":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(session_id={self.session_id!r})"


@contextlib.contextmanager
def open_session(
    base_url: str, credentials: Credentials, *, session_id: str = ""
) -> tp.Iterator[AuthSession]:
    """Open a Digest-authenticated session, close it on exit - context manager."""
    session = AuthSession(base_url=base_url, credentials=credentials, session_id=session_id)
    try:
        yield session
    finally:
        session.close()


def request_without_auth(
    method: str, url: str, *, timeout: float = DEFAULT_TIMEOUT, **kwargs: tp.Any
) -> Response:
    """Send request without any credentials."""
    LOGGER.debug(f"{method} {url} (unauthenticated)")
    with requests.Session() as session:
        return Response.from_requests(session.request(method, url, timeout=timeout, **kwargs))


def is_auth_challenge(response: Response) -> bool:
    """Check if the response asks the client to authenticate."""
    www_auth = next(
        (v for k, v in response.headers.items() if k.lower() == "www-authenticate"), ""
    )
    return response.status == 401 and (
        "Unauthorized" in response.body or www_auth.lower().startswith("digest")
    )
