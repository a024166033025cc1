from __future__ import annotations

import ipaddress
import logging
import socket
from urllib.parse import urljoin, urlparse

import requests

from studiosync.models import RemoteConfig
from studiosync.remote_client import RemoteStoreClient, RemoteStoreError

logger = logging.getLogger(__name__)

USER_AGENT = "studiosync/0.1 (+calendar feed relay)"
MAX_REDIRECTS = 5
BLOCKED_HOSTNAMES = (
    "localhost",
    "metadata",
    "metadata.google.internal",
    "metadata.google",
    "metadata.aws",
    "instance-data",
)


class FeedError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class FeedURLError(FeedError):
    status_code = 400


class FeedBlockedError(FeedError):
    status_code = 403


class FeedFetchError(FeedError):
    status_code = 502


def normalize_feed_url(url: str) -> str:
    text = str(url or "").strip()
    if text.lower().startswith("webcal://"):
        return "https://" + text[len("webcal://"):]
    return text


def _is_blocked_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    mapped = getattr(address, "ipv4_mapped", None)
    if mapped is not None:
        address = mapped
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_unspecified
        or address.is_multicast
    )


def _literal_address(host: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    # The resolver also accepts shorthand IPv4 forms such as 127.1, 2130706433 and 0x7f000001.
    try:
        return ipaddress.IPv4Address(socket.inet_aton(host))
    except (OSError, ValueError):
        return None


def _is_blocked_host(host: str) -> bool:
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost") or host.startswith("metadata."):
        return True
    address = _literal_address(host)
    return address is not None and _is_blocked_address(address)


def check_resolved_host(url: str) -> None:
    """Reject a feed whose host resolves to any blocked address."""
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower().rstrip(".")
    try:
        infos = socket.getaddrinfo(host, parsed.port or 443, proto=socket.IPPROTO_TCP)
    except OSError as exc:
        raise FeedFetchError(f"Could not resolve calendar host {host}: {exc}") from exc
    for info in infos:
        address = ipaddress.ip_address(str(info[4][0]).split("%", 1)[0])
        if _is_blocked_address(address):
            raise FeedBlockedError(f"Calendar host {host} resolves to a blocked address")


def validate_feed_url(url: str) -> str:
    normalized = normalize_feed_url(url)
    if not normalized:
        raise FeedURLError("Missing url parameter")
    try:
        parsed = urlparse(normalized)
        host = (parsed.hostname or "").lower().rstrip(".")
    except ValueError as exc:
        raise FeedURLError(f"Invalid calendar URL: {exc}") from exc
    if parsed.scheme.lower() != "https":
        raise FeedURLError("Only HTTPS calendar URLs are allowed")
    if not host:
        raise FeedURLError("Calendar URL has no host")
    if _is_blocked_host(host):
        raise FeedBlockedError(f"Calendar host is not allowed: {host}")
    return normalized


def fetch_feed_text(url: str, timeout: int = 30) -> str:
    """Fetch an ICS feed directly, validating every redirect hop."""
    current = validate_feed_url(url)
    for _ in range(MAX_REDIRECTS + 1):
        # TODO: pin the connection to the checked address; a DNS change between check and connect is still possible.
        check_resolved_host(current)
        try:
            response = requests.get(
                current,
                headers={"User-Agent": USER_AGENT, "Accept": "text/calendar, text/plain, */*"},
                timeout=timeout,
                allow_redirects=False,
            )
            if response.is_redirect:
                current = validate_feed_url(urljoin(current, response.headers.get("Location", "")))
                continue
            response.raise_for_status()
        except requests.RequestException as exc:
            raise FeedFetchError(f"Failed to fetch calendar: {exc}") from exc
        return response.text
    raise FeedFetchError("Too many redirects while fetching calendar")


def _relay_error_detail(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(payload, dict) and payload.get("detail"):
        return str(payload["detail"])
    return response.text[:300]


class FeedFetcher:
    """Fetches feeds through the same-origin relay when a remote is configured."""

    def __init__(self, config: RemoteConfig, remote_client: RemoteStoreClient | None = None) -> None:
        self.config = config
        self.remote_client = remote_client

    def uses_relay(self) -> bool:
        return bool(self.config.base_url)

    def _relay_endpoint(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/api/calendar/proxy"

    def _relay_headers(self) -> dict[str, str]:
        if self.remote_client is None:
            return {}
        try:
            return self.remote_client.auth_headers()
        except RemoteStoreError as exc:
            raise FeedFetchError(f"Calendar relay login failed: {exc}", status_code=401) from exc

    def fetch(self, url: str) -> str:
        if not self.uses_relay():
            return fetch_feed_text(url, timeout=self.config.timeout_seconds)
        normalized = validate_feed_url(url)
        headers = self._relay_headers()
        try:
            response = requests.get(
                self._relay_endpoint(),
                params={"url": normalized},
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise FeedFetchError(f"Calendar relay unreachable: {exc}") from exc
        if response.status_code == 401:
            if self.remote_client is not None:
                self.remote_client.invalidate_token()
            raise FeedFetchError("Calendar relay rejected the session token.", status_code=401)
        if response.status_code == 400:
            raise FeedURLError(_relay_error_detail(response))
        if response.status_code == 403:
            raise FeedBlockedError(_relay_error_detail(response))
        if not response.ok:
            raise FeedFetchError(f"HTTP {response.status_code}: {_relay_error_detail(response)}")
        return response.text
