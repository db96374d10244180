"""
HTTP protocol client for devices managed through a web interface.

Login and artifact download are route discovery: each candidate is tried in
order and the first acceptable response wins. Nothing here retries a failed
request.
"""

import os
import logging
from pathlib import Path
from typing import List, Optional, Tuple

import requests
import urllib3

from yback.exceptions import DeviceConnectionError
from .base import HTTPConfig, StepResult, ProbeResult, ping

logger = logging.getLogger(__name__)

# (encoding, path) in the order they are attempted
LOGIN_ROUTES: Tuple[Tuple[str, str], ...] = (
    ('json', '/login'),
    ('json', '/cgi-bin/login'),
    ('form', '/login'),
)

ARTIFACT_ROUTES: Tuple[str, ...] = (
    '/backup/{name}',
    '/download/{name}',
    '/config/{name}',
    '/cgi-bin/backup',
    '/cgi-bin/download',
    '/{name}',
)

CHUNK_SIZE = 64 * 1024


def artifact_routes(name: str) -> List[str]:
    return [route.format(name=name) for route in ARTIFACT_ROUTES]


class HTTPClient:
    """
    Handler for web-managed devices using a persistent requests.Session.

    Session cookies set by a successful login are kept for later requests.
    """

    def __init__(self):
        self.session = None
        self.config = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()
        return False

    def _new_session(self, config: HTTPConfig) -> requests.Session:
        session = requests.Session()
        session.verify = not config.ignore_cert_errors
        if config.ignore_cert_errors:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        return session

    def probe(self, config: HTTPConfig, ping_count: int = 3, ping_timeout: int = 5) -> ProbeResult:
        """
        Check ICMP reachability, then request '/'. Any status below 500 counts
        as the web interface being up.
        """
        alive, latency, error = ping(config.host, count=ping_count, timeout=ping_timeout)
        result = ProbeResult(reachable=alive, latency_ms=latency, error=error)

        if not alive:
            logger.info(f"Skipping HTTP check, {config.host} is unreachable")
            return result

        session = self._new_session(config)
        try:
            response = session.get(f"{config.base_url}/", timeout=config.timeout)
            result.protocol_reachable = response.status_code < 500
            if not result.protocol_reachable:
                result.error = f"HTTP {response.status_code}"
        except requests.RequestException as e:
            result.error = f"HTTP connectivity error: {e}"
        finally:
            session.close()

        return result

    def connect(self, config: HTTPConfig):
        """
        Open a session against the device web interface.

        Raises:
            DeviceConnectionError: If '/' cannot be fetched or answers >= 400
        """
        self.config = config
        self.session = self._new_session(config)

        try:
            response = self.session.get(f"{config.base_url}/", timeout=config.timeout)
        except requests.RequestException as e:
            self.disconnect()
            raise DeviceConnectionError(f"HTTP connection to {config.base_url} failed: {e}")

        if response.status_code >= 400:
            self.disconnect()
            raise DeviceConnectionError(f"HTTP {response.status_code}: {response.reason}")

        logger.info(f"Connected to web interface at {config.base_url}")

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    def login(self) -> StepResult:
        """
        Log in trying each LOGIN_ROUTES candidate; first status < 400 wins.
        """
        if self.session is None:
            return StepResult(success=False, command='login', error="Not connected - call connect() first")

        credentials = {'username': self.config.username, 'password': self.config.password}
        last_status = None
        last_error = None

        for encoding, path in LOGIN_ROUTES:
            command = f"POST {path} ({encoding})"
            try:
                if encoding == 'json':
                    response = self.session.post(self._url(path), json=credentials, timeout=self.config.timeout)
                else:
                    response = self.session.post(self._url(path), data=credentials, timeout=self.config.timeout)
            except requests.RequestException as e:
                last_error = str(e)
                logger.debug(f"Login attempt {command} raised: {e}")
                continue

            last_status = response.status_code
            if response.status_code < 400:
                logger.info(f"HTTP login succeeded via {command}")
                return StepResult(
                    success=True,
                    command=command,
                    output="Login successful",
                    status_code=response.status_code
                )

            logger.debug(f"Login attempt {command} answered HTTP {response.status_code}")

        error = f"Login failed: HTTP {last_status}" if last_status is not None else f"Login failed: {last_error}"
        return StepResult(success=False, command='login', error=error, status_code=last_status)

    def run_command(self, command: str) -> StepResult:
        """
        Issue a request written as "METHOD /path"; success is any status < 500.
        """
        if self.session is None:
            return StepResult(success=False, command=command, error="Not connected - call connect() first")

        parts = command.split(None, 1)
        if len(parts) == 2:
            method, path = parts[0].upper(), parts[1]
        else:
            method, path = 'GET', parts[0] if parts else '/'

        try:
            response = self.session.request(method, self._url(path), timeout=self.config.timeout)
        except requests.RequestException as e:
            return StepResult(success=False, command=command, error=str(e))

        success = response.status_code < 500
        return StepResult(
            success=success,
            command=command,
            output=response.text,
            error=None if success else f"HTTP {response.status_code}",
            status_code=response.status_code
        )

    def run_commands(self, commands: List[str]) -> List[StepResult]:
        """Issue requests in order, stopping at the first failure."""
        results = []

        for command in commands:
            result = self.run_command(command)
            results.append(result)

            if not result.success:
                break

        return results

    def transfer_file(self, remote_name: str, local_path: str) -> StepResult:
        """
        Download an artifact by probing ARTIFACT_ROUTES; the first 200 wins and
        is streamed to local_path.
        """
        command = f"download {remote_name}"

        if self.session is None:
            return StepResult(success=False, command=command, error="Not connected - call connect() first")

        for path in artifact_routes(remote_name):
            try:
                response = self.session.get(self._url(path), stream=True, timeout=self.config.timeout)
            except requests.RequestException as e:
                logger.debug(f"Artifact route {path} raised: {e}")
                continue

            if response.status_code != 200:
                response.close()
                continue

            try:
                Path(local_path).parent.mkdir(parents=True, exist_ok=True)
                with open(local_path, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
            except (OSError, requests.RequestException) as e:
                if os.path.exists(local_path):
                    os.remove(local_path)
                return StepResult(success=False, command=command, error=f"Failed to save file: {e}")
            finally:
                response.close()

            return StepResult(
                success=True,
                command=f"GET {path}",
                output=f"Downloaded from {path}",
                status_code=200
            )

        return StepResult(success=False, command=command, error="Could not locate the configuration file")

    def disconnect(self):
        """Attempt a logout and drop the session. Safe to call repeatedly."""
        if self.session is None:
            return

        try:
            self.session.post(self._url('/logout'), timeout=self.config.timeout)
        except requests.RequestException as e:
            logger.debug(f"Ignoring logout error: {e}")

        try:
            self.session.close()
        finally:
            self.session = None
