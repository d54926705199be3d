import json
import socket
import time
import typing as tp

import pytest
import requests

from marklogic_image_tests.utils import cluster_checks
from marklogic_image_tests.utils import errors
from marklogic_image_tests.utils import http_client
from marklogic_image_tests.utils import poll_utils

POLICY = poll_utils.RetryPolicy(timeout=1, interval=0.01)
CREDENTIALS = http_client.Credentials(username="admin", password="secret")

CERT = """\
-----BEGIN CERTIFICATE-----
MIIDXTCCAkWgAwIBAgIJAKL0UG+mRkSPMA0GCSqGSIb3DQEBCwUAMEUxCzAJBgNV
BAYTAkFVMRMwEQYDVQQIDApTb21lLVN0YXRlMSEwHwYDVQQKDBhJbnRlcm5ldCBX
-----END CERTIFICATE-----"""


def multipart(*values: str, boundary: str = "8f3c4a2b1d") -> str:
    parts = [
        f"--{boundary}\r\nContent-Type: text/plain\r\nX-Primitive: string\r\n\r\n{value}\r\n"
        for value in values
    ]
    return "".join(parts) + f"--{boundary}--\r\n"


def hosts_body(total: int) -> str:
    return json.dumps(
        {
            "host-status-list": {
                "status-list-summary": {"total-hosts": {"units": "quantity", "value": total}}
            }
        }
    )


class FakeSession:
    """Stand-in for `AuthSession` answering from a queue of prepared responses."""

    base_url = "http://localhost:8002"

    def __init__(self, responses: list[tuple[int, str]]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, str, dict[str, tp.Any]]] = []

    def request(
        self, method: str, path: str, *, expected_status: http_client.StatusSpec = None, **kwargs
    ) -> http_client.Response:
        self.calls.append((method, path, kwargs))
        status, body = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        response = http_client.Response(
            method=method, url=f"{self.base_url}{path}", status=status, body=body, headers={}
        )
        http_client.check_status(response=response, expected_status=expected_status)
        return response

    def get(self, path: str, **kwargs: tp.Any) -> http_client.Response:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs: tp.Any) -> http_client.Response:
        return self.request("POST", path, **kwargs)

    def put(self, path: str, **kwargs: tp.Any) -> http_client.Response:
        return self.request("PUT", path, **kwargs)


@pytest.fixture
def silent_server() -> tp.Iterator[str]:
    """Listening socket that accepts connections and never answers, return its URL."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen(8)
        host, port = sock.getsockname()
        yield f"http://{host}:{port}"


class TestHosts:
    def test_host_count(self):
        session = FakeSession([(200, hosts_body(3))])
        assert cluster_checks.get_host_count(session) == 3  # type: ignore[arg-type]
        method, path, kwargs = session.calls[0]
        assert (method, path) == ("GET", "/manage/v2/hosts")
        assert kwargs["params"] == {"view": "status", "format": "json"}

    def test_host_count_converges(self):
        session = FakeSession(
            [(503, "Service Unavailable"), (200, hosts_body(1)), (200, hosts_body(3))]
        )
        count = cluster_checks.check_host_count(
            session, "3", policy=POLICY  # type: ignore[arg-type]
        )
        assert count == 3
        assert len(session.calls) == 3

    def test_host_count_timeout(self):
        session = FakeSession([(200, hosts_body(2))])
        with pytest.raises(errors.PollTimeout) as excinfo:
            cluster_checks.check_host_count(session, 3, policy=POLICY)  # type: ignore[arg-type]

        last_error = excinfo.value.last_error
        assert isinstance(last_error, errors.AssertionMismatch)
        assert (last_error.expected, last_error.actual) == (3, 2)

    def test_request_timeout_from_deadline(self):
        session = FakeSession([(200, hosts_body(3))])
        policy = poll_utils.RetryPolicy(timeout=5, interval=0.1)
        cluster_checks.check_host_count(session, 3, policy=policy)  # type: ignore[arg-type]
        request_timeout = session.calls[0][2]["timeout"]
        assert 4 < request_timeout <= 5

    def test_unresponsive_server(self, silent_server: str):
        """A hung endpoint must not hold the check past its retry budget."""
        policy = poll_utils.RetryPolicy(timeout=1.5, interval=0.5)
        start = time.monotonic()
        with http_client.AuthSession(silent_server, CREDENTIALS, timeout=30) as session:
            with pytest.raises(errors.PollTimeout) as excinfo:
                cluster_checks.check_host_count(session, 3, policy=policy)

        assert time.monotonic() - start < policy.timeout + policy.interval
        assert isinstance(excinfo.value.last_error, requests.Timeout)

    def test_missing_key(self):
        session = FakeSession([(200, '{"host-status-list": {}}')])
        with pytest.raises(errors.ResponseFormatError, match="host-status-list.status-list"):
            cluster_checks.get_host_count(session)  # type: ignore[arg-type]

    def test_host_group(self):
        session = FakeSession([(200, json.dumps({"host-name": "node2", "group": "Default"}))])
        group = cluster_checks.check_host_group(
            session, "node2", "Default", policy=POLICY  # type: ignore[arg-type]
        )
        assert group == "Default"
        assert session.calls[0][1] == "/manage/v2/hosts/node2/properties"

    def test_create_group(self):
        session = FakeSession([(201, "")])
        cluster_checks.create_group(session, "dhf")  # type: ignore[arg-type]
        method, path, kwargs = session.calls[0]
        assert (method, path) == ("POST", "/manage/v2/groups")
        assert kwargs["json_body"] == {"group-name": "dhf"}

    def test_create_group_conflict(self):
        session = FakeSession([(400, "XDMP-GROUPEXISTS")])
        with pytest.raises(errors.AssertionMismatch, match="XDMP-GROUPEXISTS"):
            cluster_checks.create_group(session, "Default")  # type: ignore[arg-type]


class TestEvalResponses:
    def test_single_value(self):
        assert cluster_checks.get_single_value(multipart("-PT3H30M")) == "-PT3H30M"

    def test_multiple_values(self):
        with pytest.raises(errors.ResponseFormatError, match="exactly one value"):
            cluster_checks.get_single_value(multipart("PT5H", "PT0S"))

    def test_empty_response(self):
        with pytest.raises(errors.ResponseFormatError, match="got 0"):
            cluster_checks.get_single_value("")

    def test_extract_certificate(self):
        assert cluster_checks.extract_certificate(multipart(CERT)) == CERT

    def test_extract_certificate_lf_only(self):
        body = multipart(CERT).replace("\r\n", "\n")
        assert cluster_checks.extract_certificate(body) == CERT

    @pytest.mark.parametrize(
        "body",
        [
            multipart(CERT, CERT),
            multipart(f"{CERT}\n{CERT}"),
            multipart("no certificate here"),
            multipart(CERT, "unrelated part"),
        ],
        ids=("two_parts", "two_certs", "no_cert", "extra_part"),
    )
    def test_unexpected_certificates(self, body: str):
        with pytest.raises(errors.ResponseFormatError):
            cluster_checks.extract_certificate(body)

    def test_template_certificate(self):
        session = FakeSession([(200, multipart(CERT))])
        cert = cluster_checks.check_template_certificate(
            session, "tmpl1", policy=POLICY  # type: ignore[arg-type]
        )
        assert cert == CERT
        method, path, kwargs = session.calls[0]
        assert (method, path) == ("POST", "/v1/eval")
        assert 'pki:get-template-by-name("tmpl1")' in kwargs["body"]["xquery"]


class TestTimezone:
    def test_timezone_matches(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(cluster_checks.tz_utils, "tz_to_duration", lambda tz: "-PT3H30M")
        session = FakeSession([(200, multipart("-PT3H30M"))])
        result = cluster_checks.check_timezone(
            session, "America/St_Johns", policy=POLICY  # type: ignore[arg-type]
        )
        assert result == "-PT3H30M"
        assert session.calls[0][2]["body"] == {"xquery": "fn:implicit-timezone()"}

    def test_timezone_mismatch(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(cluster_checks.tz_utils, "tz_to_duration", lambda tz: "PT5H")
        session = FakeSession([(200, multipart("PT0S"))])
        with pytest.raises(errors.PollTimeout) as excinfo:
            cluster_checks.check_timezone(
                session, "Asia/Karachi", policy=POLICY  # type: ignore[arg-type]
            )
        assert "'PT0S'. Expected: 'PT5H'" in str(excinfo.value.last_error)


class TestCertificateTemplates:
    def test_create_template(self):
        session = FakeSession([(201, "")])
        cluster_checks.create_certificate_template(
            session, "tmpl1", common_name="node1"  # type: ignore[arg-type]
        )
        template = session.calls[0][2]["json_body"]
        assert template["template-name"] == "tmpl1"
        assert template["req"]["subject"]["commonName"] == "node1"

    def test_insert_invalid_certificate(self):
        session = FakeSession([(400, "MANAGE-INVALIDPAYLOAD")])
        response = cluster_checks.insert_host_certificate(
            session, "tmpl1", cert="not a cert", pkey="not a key"  # type: ignore[arg-type]
        )
        assert response.status == 400
        payload = session.calls[0][2]["json_body"]
        assert payload["operation"] == "insert-host-certificates"
        assert payload["certificates"]["certificate"]["cert"] == "not a cert"

    def test_set_server_template(self):
        session = FakeSession([(204, "")])
        cluster_checks.set_server_certificate_template(
            session, "App-Services", "tmpl1"  # type: ignore[arg-type]
        )
        method, path, kwargs = session.calls[0]
        assert (method, path) == ("PUT", "/manage/v2/servers/App-Services/properties")
        assert kwargs["params"] == {"group-id": "Default"}


class TestUnauthenticated:
    def test_challenged(self, monkeypatch: pytest.MonkeyPatch):
        response = http_client.Response(
            method="GET", url="http://localhost:8000", status=401, body="Unauthorized", headers={}
        )
        monkeypatch.setattr(
            cluster_checks.http_client, "request_without_auth", lambda *a, **kw: response
        )
        assert cluster_checks.check_unauthenticated("http://localhost:8000") is response

    def test_not_challenged(self, monkeypatch: pytest.MonkeyPatch):
        response = http_client.Response(
            method="GET", url="http://localhost:8000", status=200, body="OK", headers={}
        )
        monkeypatch.setattr(
            cluster_checks.http_client, "request_without_auth", lambda *a, **kw: response
        )
        with pytest.raises(errors.AssertionMismatch, match="Expected: '401 Unauthorized'"):
            cluster_checks.check_unauthenticated("http://localhost:8000")

    def test_healthcheck(self, monkeypatch: pytest.MonkeyPatch):
        statuses = [503, 503, 200]

        def _request(method: str, url: str, **kwargs: tp.Any) -> http_client.Response:
            return http_client.Response(
                method=method, url=url, status=statuses.pop(0), body="", headers={}
            )

        monkeypatch.setattr(cluster_checks.http_client, "request_without_auth", _request)
        cluster_checks.wait_for_healthcheck("http://localhost:7997", policy=POLICY)
        assert not statuses
