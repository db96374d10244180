"""
Unit tests for the HTTP client (yback/protocols/http.py).
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from yback.exceptions import DeviceConnectionError
from yback.protocols import HTTPClient, HTTPConfig


def _response(status_code, chunks=(b'',), text=''):
    response = MagicMock()
    response.status_code = status_code
    response.reason = 'reason'
    response.text = text
    response.iter_content.return_value = list(chunks)
    return response


@pytest.fixture
def config():
    return HTTPConfig(host='10.0.0.2', username='admin', password='secret', port=80)


@pytest.fixture
def session():
    with patch('yback.protocols.http.requests.Session') as mock_session_class:
        instance = MagicMock()
        instance.get.return_value = _response(200)
        mock_session_class.return_value = instance
        yield instance


class TestHTTPConnect:
    """Test session setup."""

    def test_connect(self, session, config):
        client = HTTPClient()
        client.connect(config)

        session.get.assert_called_once_with('http://10.0.0.2:80/', timeout=15)

    def test_connect_error_status(self, session, config):
        session.get.return_value = _response(403)

        client = HTTPClient()
        with pytest.raises(DeviceConnectionError, match="HTTP 403"):
            client.connect(config)
        assert client.session is None

    def test_connect_network_error(self, session, config):
        session.get.side_effect = requests.ConnectionError("refused")

        with pytest.raises(DeviceConnectionError):
            HTTPClient().connect(config)

    def test_https_base_url(self):
        assert HTTPConfig(host='radio', scheme='https').base_url == 'https://radio:443'


class TestHTTPLogin:
    """Test login route discovery."""

    def test_login_falls_back_to_cgi_bin(self, session, config):
        """/login answers 404, /cgi-bin/login answers 200: login succeeds."""
        session.post.side_effect = [_response(404), _response(200)]

        client = HTTPClient()
        client.connect(config)
        result = client.login()

        assert result.success
        assert result.status_code == 200
        first, second = session.post.call_args_list
        assert first[0][0] == 'http://10.0.0.2:80/login'
        assert second[0][0] == 'http://10.0.0.2:80/cgi-bin/login'
        assert second[1]['json'] == {'username': 'admin', 'password': 'secret'}

    def test_login_form_encoded_last(self, session, config):
        session.post.side_effect = [_response(404), _response(404), _response(302)]

        client = HTTPClient()
        client.connect(config)
        result = client.login()

        assert result.success
        assert session.post.call_args_list[2][1]['data'] == {'username': 'admin', 'password': 'secret'}

    def test_login_all_rejected(self, session, config):
        session.post.return_value = _response(401)

        client = HTTPClient()
        client.connect(config)
        result = client.login()

        assert not result.success
        assert result.error == 'Login failed: HTTP 401'
        assert session.post.call_count == 3


class TestHTTPCommands:
    """Test request commands."""

    def test_server_error_is_failure(self, session, config):
        session.request.return_value = _response(500)

        client = HTTPClient()
        client.connect(config)
        result = client.run_command('POST /api/reboot')

        assert not result.success
        session.request.assert_called_once_with('POST', 'http://10.0.0.2:80/api/reboot', timeout=15)

    def test_client_error_is_success(self, session, config):
        session.request.return_value = _response(404)

        client = HTTPClient()
        client.connect(config)

        assert client.run_command('GET /status').success


class TestHTTPTransfer:
    """Test artifact route probing."""

    def test_first_200_wins(self, session, config, tmp_path):
        session.get.side_effect = [
            _response(200),  # connect
            _response(404),  # /backup/mimosa.conf
            _response(200, chunks=[b'config ', b'data']),  # /download/mimosa.conf
        ]

        client = HTTPClient()
        client.connect(config)
        local = tmp_path / 'mimosa.conf'
        result = client.transfer_file('mimosa.conf', str(local))

        assert result.success
        assert result.command == 'GET /download/mimosa.conf'
        assert local.read_bytes() == b'config data'

    def test_no_route_answers(self, session, config, tmp_path):
        client = HTTPClient()
        client.connect(config)
        session.get.return_value = _response(404)

        result = client.transfer_file('mimosa.conf', str(tmp_path / 'mimosa.conf'))

        assert not result.success
        assert result.error == 'Could not locate the configuration file'
        # connect + six candidate routes
        assert session.get.call_count == 7


class TestHTTPDisconnect:
    """Test logout and idempotent disconnect."""

    def test_disconnect_swallows_logout_errors(self, session, config):
        session.post.side_effect = requests.ConnectionError("gone")

        client = HTTPClient()
        client.connect(config)
        client.disconnect()
        client.disconnect()

        session.post.assert_called_once_with('http://10.0.0.2:80/logout', timeout=15)
        session.close.assert_called_once()

    @patch('yback.protocols.http.ping')
    def test_probe_unreachable(self, mock_ping, session, config):
        mock_ping.return_value = (False, None, 'Host 10.0.0.2 does not answer ping')

        result = HTTPClient().probe(config)

        assert not result.reachable
        assert not result.protocol_reachable
        session.get.assert_not_called()
