"""Checks of cluster state through the Management REST API and the eval endpoint.

Every `check_*` function re-queries the server until the expected state is reached, using
the retry policy of the scenario. Nothing is cached between checks.
"""

import logging
import re
import typing as tp

from marklogic_image_tests.utils import errors
from marklogic_image_tests.utils import http_client
from marklogic_image_tests.utils import poll_utils
from marklogic_image_tests.utils import tz_utils

LOGGER = logging.getLogger(__name__)

HOSTS_PATH = "/manage/v2/hosts"
GROUPS_PATH = "/manage/v2/groups"
CERT_TEMPLATES_PATH = "/manage/v2/certificate-templates"
EVAL_PATH = "/v1/eval"

# Floor of the per-request timeout of a polled check, when little of the deadline is left
MIN_REQUEST_TIMEOUT = 1.0

HOST_COUNT_KEYS = ("host-status-list", "status-list-summary", "total-hosts", "value")

CERT_BEGIN = "-----BEGIN CERTIFICATE-----"
CERT_END = "-----END CERTIFICATE-----"
# Delimiter lines of a `multipart/mixed` body, e.g. `--a1b2c3` or closing `--a1b2c3--`
BOUNDARY_RE = re.compile(r"^--[0-9A-Za-z'()+_,./:=?-]+?(?:--)?\r?$", re.MULTILINE)
_PART_HEADERS_END_RE = re.compile(r"\r?\n\r?\n")


def _request_timeout(deadline: poll_utils.Deadline) -> float:
    return max(MIN_REQUEST_TIMEOUT, deadline.remaining())


def get_key_path(data: tp.Any, keys: tp.Iterable[str]) -> tp.Any:
    """Return value at the `keys` path of nested JSON `data`."""
    value = data
    walked: list[str] = []
    for key in keys:
        walked.append(key)
        if not isinstance(value, dict) or key not in value:
            msg = f"Key path `{'.'.join(walked)}` not found in response: {str(data)[:500]}"
            raise errors.ResponseFormatError(msg)
        value = value[key]
    return value


def get_host_count(session: http_client.AuthSession, *, timeout: float | None = None) -> int:
    """Return number of hosts in the cluster."""
    response = session.get(
        HOSTS_PATH,
        params={"view": "status", "format": "json"},
        expected_status=200,
        timeout=timeout,
    )
    return int(get_key_path(response.json(), HOST_COUNT_KEYS))


def check_host_count(
    session: http_client.AuthSession,
    expected: int | str,
    *,
    policy: poll_utils.RetryPolicy,
) -> int:
    """Wait until the cluster has exactly `expected` hosts."""
    expected_count = int(expected)

    def _check(deadline: poll_utils.Deadline) -> int:
        host_count = get_host_count(session, timeout=_request_timeout(deadline))
        if host_count != expected_count:
            raise errors.AssertionMismatch(
                label=f"host count on {session.base_url}",
                expected=expected_count,
                actual=host_count,
            )
        return host_count

    return poll_utils.poll_until_success(
        _check, policy=policy, description=f"{expected_count} hosts on {session.base_url}"
    )


def get_host_group(
    session: http_client.AuthSession, hostname: str, *, timeout: float | None = None
) -> str:
    """Return name of the group the host belongs to."""
    response = session.get(
        f"{HOSTS_PATH}/{hostname}/properties",
        params={"format": "json"},
        expected_status=200,
        timeout=timeout,
    )
    return str(get_key_path(response.json(), ("group",)))


def create_group(session: http_client.AuthSession, group_name: str) -> http_client.Response:
    """Create new group in the cluster."""
    LOGGER.info(f"Creating group '{group_name}'.")
    return session.post(GROUPS_PATH, json_body={"group-name": group_name}, expected_status=201)


def check_host_group(
    session: http_client.AuthSession,
    hostname: str,
    expected_group: str,
    *,
    policy: poll_utils.RetryPolicy,
) -> str:
    """Wait until the host is a member of the `expected_group`."""

    def _check(deadline: poll_utils.Deadline) -> str:
        group = get_host_group(session, hostname, timeout=_request_timeout(deadline))
        if group != expected_group:
            raise errors.AssertionMismatch(
                label=f"group of host '{hostname}'", expected=expected_group, actual=group
            )
        return group

    return poll_utils.poll_until_success(
        _check, policy=policy, description=f"host '{hostname}' in group '{expected_group}'"
    )


def create_certificate_template(
    session: http_client.AuthSession,
    template_name: str,
    *,
    common_name: str = "",
    country: str = "US",
    organization: str = "Acme Corporation",
    key_length: int = 2048,
) -> http_client.Response:
    """Create certificate template that app servers can refer to by name."""
    subject = {"countryName": country, "organizationName": organization}
    if common_name:
        subject["commonName"] = common_name
    template = {
        "template-name": template_name,
        "template-description": f"Template {template_name}",
        "key-type": "rsa",
        "key-options": {"key-length": str(key_length)},
        "req": {"version": "0", "subject": subject},
    }
    LOGGER.info(f"Creating certificate template '{template_name}'.")
    return session.post(CERT_TEMPLATES_PATH, json_body=template, expected_status=201)


def set_server_certificate_template(
    session: http_client.AuthSession,
    server: str,
    template_name: str,
    *,
    group: str = "Default",
) -> http_client.Response:
    """Make app server `server` use certificate template `template_name`."""
    return session.put(
        f"/manage/v2/servers/{server}/properties",
        params={"group-id": group},
        json_body={"ssl-certificate-template": template_name},
        expected_status=204,
    )


def insert_host_certificate(
    session: http_client.AuthSession, template_name: str, *, cert: str, pkey: str
) -> http_client.Response:
    """Upload certificate and private key for a template.

    Any status is accepted, the caller checks the outcome (e.g. rejection of invalid data).
    """
    return session.post(
        f"{CERT_TEMPLATES_PATH}/{template_name}",
        json_body={
            "operation": "insert-host-certificates",
            "certificates": {"certificate": {"cert": cert, "pkey": pkey}},
        },
    )


def eval_xquery(
    session: http_client.AuthSession, query: str, *, timeout: float | None = None
) -> str:
    """Evaluate XQuery on the server, return the raw `multipart/mixed` body."""
    response = session.post(
        EVAL_PATH,
        body={"xquery": query},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        expected_status=200,
        timeout=timeout,
    )
    return response.body


def get_multipart_values(body: str) -> list[str]:
    """Return content of all parts of a `multipart/mixed` eval response."""
    values = []
    for part in BOUNDARY_RE.split(body):
        if not part.strip():
            continue
        split_part = _PART_HEADERS_END_RE.split(part.lstrip("\r\n"), maxsplit=1)
        content = split_part[1] if len(split_part) == 2 else ""
        values.append(content.strip())
    return values


def get_single_value(body: str) -> str:
    """Return the one value of eval response."""
    values = get_multipart_values(body)
    if len(values) != 1:
        msg = f"Expected exactly one value in eval response, got {len(values)}:\n{body[:1000]}"
        raise errors.ResponseFormatError(msg)
    return values[0]


def extract_certificate(body: str) -> str:
    """Extract the PEM encoded certificate from eval response.

    Exactly one certificate per response is expected, anything else is a format error.
    """
    cert_count = body.count(CERT_BEGIN)
    if cert_count != 1:
        msg = f"Expected exactly one certificate in eval response, found {cert_count}"
        raise errors.ResponseFormatError(msg)

    value = get_single_value(body)
    start = value.find(CERT_BEGIN)
    end = value.find(CERT_END, start)
    if start < 0 or end < 0:
        msg = f"Malformed certificate in eval response:\n{value[:1000]}"
        raise errors.ResponseFormatError(msg)
    return value[start : end + len(CERT_END)]


def get_template_certificate(
    session: http_client.AuthSession, template_name: str, *, timeout: float | None = None
) -> str:
    """Return PEM certificate generated for the certificate template."""
    query = (
        'xquery version "1.0-ml";\n'
        'import module namespace pki = "http://marklogic.com/xdmp/pki" at "/MarkLogic/pki.xqy";\n'
        f'let $tid := pki:template-get-id(pki:get-template-by-name("{template_name}"))\n'
        "return pki:get-certificates-for-template($tid)/pki:pem/fn:string()"
    )
    return extract_certificate(eval_xquery(session, query, timeout=timeout))


def check_template_certificate(
    session: http_client.AuthSession,
    template_name: str,
    *,
    policy: poll_utils.RetryPolicy,
) -> str:
    """Wait until a certificate was generated for the certificate template."""
    return poll_utils.poll_until_success(
        lambda deadline: get_template_certificate(
            session, template_name, timeout=_request_timeout(deadline)
        ),
        policy=policy,
        description=f"certificate of template '{template_name}'",
    )


def get_server_timezone(session: http_client.AuthSession, *, timeout: float | None = None) -> str:
    """Return UTC offset the server works with, in duration notation (e.g. `-PT3H30M`)."""
    return get_single_value(eval_xquery(session, "fn:implicit-timezone()", timeout=timeout))


def check_timezone(
    session: http_client.AuthSession,
    tz_name: str,
    *,
    policy: poll_utils.RetryPolicy,
) -> str:
    """Check that the server UTC offset matches the OS offset of timezone `tz_name`."""
    expected = tz_utils.tz_to_duration(tz_name)

    def _check(deadline: poll_utils.Deadline) -> str:
        server_tz = get_server_timezone(session, timeout=_request_timeout(deadline))
        if server_tz != expected:
            raise errors.AssertionMismatch(
                label=f"server timezone for '{tz_name}'", expected=expected, actual=server_tz
            )
        return server_tz

    return poll_utils.poll_until_success(
        _check, policy=policy, description=f"server timezone '{tz_name}'"
    )


def check_unauthenticated(url: str) -> http_client.Response:
    """Check that request without credentials is challenged for authentication."""
    response = http_client.request_without_auth("GET", url)
    if not http_client.is_auth_challenge(response):
        raise errors.AssertionMismatch(
            label=f"response to unauthenticated request to {url} ({response.body[:500]})",
            expected="401 Unauthorized",
            actual=response.status,
        )
    return response


def wait_for_healthcheck(url: str, *, policy: poll_utils.RetryPolicy) -> None:
    """Wait until the HealthCheck app server answers with status 200."""

    def _check(deadline: poll_utils.Deadline) -> None:
        response = http_client.request_without_auth("GET", url, timeout=_request_timeout(deadline))
        http_client.check_status(response=response, expected_status=200)

    poll_utils.poll_until_success(_check, policy=policy, description=f"healthcheck {url}")
