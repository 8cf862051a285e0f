# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Trino external authentication (browser OAuth2 flow) for the Trino MCP Server.

Trino clusters configured with OAuth2 answer an unauthenticated statement request
with ``401 Unauthorized`` and a challenge header of the form::

    WWW-Authenticate: Bearer x_redirect_server="https://...", x_token_server="https://..."

The user completes the login at ``x_redirect_server`` in a browser while the server
polls ``x_token_server`` until the token is ready. ``TokenBroker`` runs that flow,
caches the resulting token and hands it out to concurrent query paths.
"""

import asyncio
import httpx
import json
import re
import subprocess  # nosec B404 - subprocess needed to open the user's browser
import sys
import threading
import time
from awslabs.trino_mcp_server.consts import (
    CHALLENGE_PROBE_SQL,
    DEFAULT_EXTERNAL_AUTH_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TOKEN_TTL,
    HEADER_TRINO_USER,
    HEADER_WWW_AUTHENTICATE,
    HTTP_CLIENT_TIMEOUT,
    STATEMENT_PATH,
)
from dataclasses import dataclass
from loguru import logger
from typing import Callable, NamedTuple, Optional
from urllib.parse import urlparse


BEARER_SCHEME_REGEXP = re.compile(r'^bearer\s', re.IGNORECASE)
REDIRECT_SERVER_REGEXP = re.compile(r'x_redirect_server\s*=\s*"([^"]+)"')
TOKEN_SERVER_REGEXP = re.compile(r'x_token_server\s*=\s*"([^"]+)"')

# Whole words only. Every match drops the cached token and can start a browser login,
# so names such as authentication_events must not match.
AUTH_ERROR_REGEXP = re.compile(r'\b(?:401|unauthorized|authentication)\b', re.IGNORECASE)
# Side effects of a concurrent re-authentication tearing down a shared connection
CONNECTION_TEARDOWN_MARKERS = (
    'connection refused',
    'connection reset',
    'use of closed',
    'has been closed',
    'connection closed',
    'broken pipe',
)


class ExternalAuthError(Exception):
    """Base class for external authentication failures."""


class ChallengeDiscoveryError(ExternalAuthError):
    """Raised when the unauthenticated probe does not yield a usable challenge."""


class PollTimeoutError(ExternalAuthError):
    """Raised when the user does not complete authentication in time."""


class PollTransientError(ExternalAuthError):
    """A single token poll attempt failed. Never surfaced to callers."""


class BrowserLaunchError(ExternalAuthError):
    """Raised when the browser cannot be opened for the given URL."""


class AuthChallenge(NamedTuple):
    """Endpoints extracted from a Bearer challenge header."""

    redirect_url: str
    token_url: str


@dataclass(frozen=True)
class TokenCache:
    """Cached OAuth token.

    Frozen so the broker can only replace or drop the entry as a whole.

    Attributes:
        token: The bearer token returned by the token server
        expires_at: ``time.monotonic()`` deadline after which the token is stale
    """

    token: str
    expires_at: float

    def is_valid(self, now: Optional[float] = None) -> bool:
        """Return True while the token has not reached its expiry."""
        if now is None:
            now = time.monotonic()
        return now < self.expires_at


def parse_auth_header(header: str) -> AuthChallenge:
    """Parse a Bearer challenge header into the redirect and token server URLs.

    The scheme check is case-insensitive. Fields may appear in any order with
    arbitrary whitespace around ``=`` and between fields. A missing field yields an
    empty string for that field only; a non-Bearer header yields two empty strings.

    Args:
        header: Raw value of the WWW-Authenticate header

    Returns:
        AuthChallenge with redirect_url and token_url
    """
    header = (header or '').strip()
    if not BEARER_SCHEME_REGEXP.match(header):
        return AuthChallenge('', '')

    redirect_url = ''
    token_url = ''

    match = REDIRECT_SERVER_REGEXP.search(header)
    if match:
        redirect_url = match.group(1)

    match = TOKEN_SERVER_REGEXP.search(header)
    if match:
        token_url = match.group(1)

    return AuthChallenge(redirect_url, token_url)


def open_browser(target_url: str) -> None:
    """Open the URL in the user's default browser.

    Args:
        target_url: The http or https URL to open

    Raises:
        BrowserLaunchError: If the scheme is not http/https, the platform is not
            supported, or the launcher process cannot be started
    """
    parsed = urlparse(target_url)
    if parsed.scheme not in ('http', 'https'):
        raise BrowserLaunchError(f'unsafe URL scheme: {parsed.scheme!r}')

    if sys.platform == 'darwin':
        cmd = ['open', target_url]
    elif sys.platform.startswith('linux'):
        cmd = ['xdg-open', target_url]
    elif sys.platform == 'win32':
        cmd = ['rundll32', 'url.dll,FileProtocolHandler', target_url]
    else:
        raise BrowserLaunchError(f'unsupported platform: {sys.platform}')

    try:
        subprocess.Popen(  # nosec B603 - fixed launcher, URL scheme validated above
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as e:
        raise BrowserLaunchError(f'failed to start {cmd[0]}: {e}') from e


def is_authentication_error(err: Optional[BaseException]) -> bool:
    """Check whether an error calls for a retry with a fresh token.

    Covers explicit authentication failures and connection teardown errors that show up
    when a concurrent re-authentication closes a connection shared with this request.
    """
    if err is None:
        return False
    message = str(err).lower()
    if AUTH_ERROR_REGEXP.search(message):
        return True
    return any(marker in message for marker in CONNECTION_TEARDOWN_MARKERS)


class TokenBroker:
    """Acquires, caches and invalidates Trino external authentication tokens.

    The cache slot starts empty, is replaced wholesale after a successful flow and is
    cleared by invalidate_token(). The lock guarding it is never held across network
    calls, the browser launch or the polling loop, so a slow interactive login does not
    block callers that can be served from a token installed by another flow.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        timeout: float = DEFAULT_EXTERNAL_AUTH_TIMEOUT,
        ssl_insecure: bool = False,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        token_ttl: float = DEFAULT_TOKEN_TTL,
        browser_opener: Callable[[str], None] = open_browser,
    ):
        """Initialize the token broker.

        Args:
            base_url: Trino coordinator URL, e.g. https://trino.example.com:443
            username: Value sent as X-Trino-User on the challenge probe
            timeout: Seconds to wait for the user to finish the browser login
            ssl_insecure: Skip TLS certificate verification (self-signed clusters)
            poll_interval: Seconds between token server polls
            token_ttl: Seconds a freshly obtained token is considered valid
            browser_opener: Callable that opens a URL for the user
        """
        self.base_url = base_url.rstrip('/')
        self.username = username
        self.timeout = timeout
        self.ssl_insecure = ssl_insecure
        self.poll_interval = poll_interval
        self.token_ttl = token_ttl
        self._browser_opener = browser_opener
        self._cache: Optional[TokenCache] = None
        self._lock = threading.Lock()

    def _cached_token(self) -> Optional[str]:
        with self._lock:
            if self._cache is not None and self._cache.is_valid():
                return self._cache.token
        return None

    async def get_token(self) -> str:
        """Return a valid token, running the browser flow when the cache is empty or stale.

        Cancelling the awaiting task (directly or through a deadline such as
        asyncio.wait_for) stops the flow at once and propagates CancelledError.

        Returns:
            The bearer token

        Raises:
            ChallengeDiscoveryError: If the auth URLs cannot be obtained from Trino
            PollTimeoutError: If the user does not complete the login within the timeout
        """
        token = self._cached_token()
        if token is not None:
            logger.info('Using cached OAuth token')
            return token

        logger.info('No valid cached token, initiating external authentication flow')

        async with httpx.AsyncClient(
            verify=not self.ssl_insecure, timeout=HTTP_CLIENT_TIMEOUT
        ) as client:
            challenge = await self._discover_challenge(client)

            logger.info(f'Opening browser for authentication at: {challenge.redirect_url}')
            self._launch_browser(challenge.redirect_url)

            logger.info('Waiting for authentication to complete...')
            token = await self._poll_for_token(client, challenge.token_url)

        with self._lock:
            # Another flow may have finished while this one was waiting on the user
            if self._cache is not None and self._cache.is_valid():
                return self._cache.token
            self._cache = TokenCache(token=token, expires_at=time.monotonic() + self.token_ttl)

        logger.info('Successfully authenticated and cached token')
        return token

    def invalidate_token(self) -> None:
        """Clear the cached token, forcing re-authentication on the next request."""
        with self._lock:
            self._cache = None
        logger.info('OAuth token cache invalidated')

    async def _discover_challenge(self, client: httpx.AsyncClient) -> AuthChallenge:
        """Trigger a 401 from Trino and extract the OAuth URLs from its challenge."""
        url = f'{self.base_url}{STATEMENT_PATH}'
        try:
            response = await client.post(
                url,
                content=CHALLENGE_PROBE_SQL,
                headers={HEADER_TRINO_USER: self.username},
            )
        except httpx.HTTPError as e:
            raise ChallengeDiscoveryError(f'failed to reach {url}: {e}') from e

        if response.status_code != 401:
            raise ChallengeDiscoveryError(
                f'unexpected status code: {response.status_code} (expected 401)'
            )

        header = response.headers.get(HEADER_WWW_AUTHENTICATE)
        if not header:
            raise ChallengeDiscoveryError(f'no {HEADER_WWW_AUTHENTICATE} header found')

        challenge = parse_auth_header(header)
        if not challenge.redirect_url or not challenge.token_url:
            raise ChallengeDiscoveryError(f'failed to parse OAuth URLs from header: {header}')
        return challenge

    def _launch_browser(self, redirect_url: str) -> None:
        try:
            self._browser_opener(redirect_url)
        except Exception as e:
            logger.warning(f'Failed to open browser automatically: {e}')
            logger.warning(f'Please manually open this URL in your browser: {redirect_url}')

    async def _poll_for_token(self, client: httpx.AsyncClient, token_url: str) -> str:
        """Poll the token server until a token arrives or the timeout elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout

        # The user may already have completed the login
        attempt = 'Initial token retrieval attempt'
        while True:
            try:
                return await self._try_get_token(client, token_url)
            except PollTransientError as e:
                logger.debug(f'{attempt} failed: {e} (will retry)')
            attempt = 'Token retrieval attempt'

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval, remaining))
            if loop.time() >= deadline:
                break

        raise PollTimeoutError(
            f'authentication timeout: user did not complete authentication within {self.timeout}s'
        )

    async def _try_get_token(self, client: httpx.AsyncClient, token_url: str) -> str:
        """Make a single attempt at fetching the token.

        Raises:
            PollTransientError: If the token is not ready or the request failed
        """
        try:
            response = await client.get(token_url)
        except httpx.HTTPError as e:
            raise PollTransientError(str(e)) from e

        if response.status_code != 200:
            raise PollTransientError(f'token not ready (status: {response.status_code})')

        token = extract_token(response.text)
        if not token:
            raise PollTransientError('token server returned an empty token')
        return token


def extract_token(body: str) -> str:
    """Extract the token from a token server response body.

    JSON objects carry the token in their ``token`` field and JSON ``null`` means the
    token is not ready. Any other body is taken verbatim (stripped) as a plain-text
    token.
    """
    try:
        payload = json.loads(body)
    except ValueError:
        return body.strip()

    if payload is None:
        return ''
    if isinstance(payload, dict):
        token = payload.get('token')
        return token if isinstance(token, str) else ''
    return body.strip()
