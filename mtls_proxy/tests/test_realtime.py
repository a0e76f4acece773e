"""
Unit Tests for the WebSocket Relay
==================================

Tests for mtls_proxy/realtime/ws.py

Test Coverage:
--------------
1. Upgrade without a valid client certificate => HTTP 401 denial
2. Revoked certificate => close 1008, target never contacted
3. Target unreachable or timing out => close 1011
4. Messages relayed in order, text and binary preserved
5. Target closure and target errors propagated to the client
6. Target URL resolution for every path forwarding mode

Run tests:
----------
    pytest mtls_proxy/tests/test_realtime.py -v
"""

import asyncio

import pytest
from fastapi import WebSocketDisconnect, status
from fastapi.testclient import TestClient
from starlette.testclient import WebSocketDenialResponse
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, InvalidURI
from websockets.frames import Close
from websockets.protocol import State

from mtls_proxy.auth.certificates import PeerCertificateRegistry
from mtls_proxy.auth.revocation import RevocationRegistry
from mtls_proxy.main import create_websocket_app
from mtls_proxy.realtime.ws import AUTH_FAILED_TEXT, resolve_target_url


class FakeTargetConnection:
    """
    Stand-in for a websockets client connection.

    ``script`` is replayed by recv(): plain values are delivered as messages,
    exceptions are raised. Once the script is exhausted the connection echoes
    whatever it is sent.
    """

    def __init__(self, script=()):
        self.state = State.OPEN
        self.close_code = None
        self.sent = []
        self.closed_with = None
        self._inbox = asyncio.Queue()
        for item in script:
            self._inbox.put_nowait(item)

    async def recv(self):
        item = await self._inbox.get()
        if isinstance(item, BaseException):
            self.state = State.CLOSED
            raise item
        return item

    async def send(self, message):
        self.sent.append(message)
        await self._inbox.put(message)

    async def close(self, code=1000, reason=""):
        if self.state is State.CLOSED:
            return
        self.state = State.CLOSED
        self.close_code = code
        self.closed_with = (code, reason)
        await self._inbox.put(ConnectionClosedOK(None, Close(code, reason)))


class RecordingConnector:
    """Target connector returning a prepared connection, raising, or opening a fresh echo target."""

    def __init__(self, result=None):
        self.result = result
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        if isinstance(self.result, BaseException):
            raise self.result
        if self.result is None:
            return FakeTargetConnection()
        return self.result


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def target():
    return FakeTargetConnection()


@pytest.fixture
def connector(target):
    return RecordingConnector(target)


def make_client(settings, registry, connector, revoked=()):
    app = create_websocket_app(
        settings,
        peer_certificates=registry,
        revocation=RevocationRegistry(revoked),
        target_connector=connector,
    )
    return TestClient(app)


@pytest.fixture
def client(mock_settings, peer_registry, connector):
    """Create test client"""
    return make_client(mock_settings, peer_registry, connector)


# ============================================================================
# Authentication Tests
# ============================================================================

def test_upgrade_without_certificate_is_denied(mock_settings, connector):
    client = make_client(mock_settings, PeerCertificateRegistry(), connector)

    with pytest.raises(WebSocketDenialResponse) as exc_info:
        with client.websocket_connect("/"):
            pass

    assert exc_info.value.status_code == status.HTTP_401_UNAUTHORIZED
    assert exc_info.value.text == AUTH_FAILED_TEXT
    assert connector.urls == []


def test_revoked_certificate_closes_with_policy_violation(mock_settings, peer_registry, connector):
    client = make_client(mock_settings, peer_registry, connector, revoked=["1A2B3C"])

    with client.websocket_connect("/") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_text()

    assert exc_info.value.code == status.WS_1008_POLICY_VIOLATION
    assert exc_info.value.reason == "Certificate revoked"
    assert connector.urls == []


def test_other_serials_are_not_revoked(mock_settings, peer_registry, connector):
    client = make_client(mock_settings, peer_registry, connector, revoked=["FF"])

    with client.websocket_connect("/") as websocket:
        websocket.send_text("ping")
        assert websocket.receive_text() == "ping"

    assert connector.urls == ["ws://backend:8188"]


# ============================================================================
# Target Connection Tests
# ============================================================================

@pytest.mark.parametrize(
    "failure",
    [ConnectionRefusedError("refused"), InvalidURI("ws://nowhere:x", "bad port")],
)
def test_target_connection_error_closes_with_1011(mock_settings, peer_registry, failure):
    client = make_client(mock_settings, peer_registry, RecordingConnector(failure))

    with client.websocket_connect("/") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_text()

    assert exc_info.value.code == status.WS_1011_INTERNAL_ERROR
    assert exc_info.value.reason == "Target connection error"


def test_target_connection_timeout_closes_with_1011(mock_settings, peer_registry):
    client = make_client(mock_settings, peer_registry, RecordingConnector(asyncio.TimeoutError()))

    with client.websocket_connect("/") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_text()

    assert exc_info.value.code == status.WS_1011_INTERNAL_ERROR
    assert exc_info.value.reason == "Target connection timeout"


def test_path_forwarded_only_with_query(mock_settings, peer_registry):
    connector = RecordingConnector()
    client = make_client(mock_settings, peer_registry, connector)

    with client.websocket_connect("/ws?clientId=abc") as websocket:
        websocket.send_text("hello")
        websocket.receive_text()

    with client.websocket_connect("/ws") as websocket:
        websocket.send_text("hello")
        websocket.receive_text()

    assert connector.urls == ["ws://backend:8188/ws?clientId=abc", "ws://backend:8188"]


# ============================================================================
# Relay Tests
# ============================================================================

def test_messages_relayed_in_order(client, target):
    with client.websocket_connect("/") as websocket:
        for text in ("M1", "M2", "M3"):
            websocket.send_text(text)

        received = [websocket.receive_text() for _ in range(3)]

    assert received == ["M1", "M2", "M3"]
    assert target.sent[:3] == ["M1", "M2", "M3"]


def test_binary_frames_stay_binary(client, target):
    payload = bytes([0, 1, 2, 255])

    with client.websocket_connect("/") as websocket:
        websocket.send_bytes(payload)
        websocket.send_text("text")

        assert websocket.receive_bytes() == payload
        assert websocket.receive_text() == "text"

    assert target.sent[:2] == [payload, "text"]


def test_target_close_closes_client_normally(mock_settings, peer_registry):
    target = FakeTargetConnection([
        "last words",
        ConnectionClosedOK(Close(4000, "backend done"), Close(4000, "backend done")),
    ])
    client = make_client(mock_settings, peer_registry, RecordingConnector(target))

    with client.websocket_connect("/") as websocket:
        assert websocket.receive_text() == "last words"
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_text()

    assert exc_info.value.code == status.WS_1000_NORMAL_CLOSURE


def test_target_close_frame_with_error_code_is_a_closure(mock_settings, peer_registry):
    target = FakeTargetConnection([
        ConnectionClosedError(Close(1011, "backend crashed"), Close(1011, "backend crashed")),
    ])
    client = make_client(mock_settings, peer_registry, RecordingConnector(target))

    with client.websocket_connect("/") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_text()

    assert exc_info.value.code == status.WS_1000_NORMAL_CLOSURE


def test_target_error_closes_client_with_1011(mock_settings, peer_registry):
    target = FakeTargetConnection([ConnectionClosedError(None, None)])
    client = make_client(mock_settings, peer_registry, RecordingConnector(target))

    with client.websocket_connect("/") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_text()

    assert exc_info.value.code == status.WS_1011_INTERNAL_ERROR
    assert exc_info.value.reason == "Target connection error"


# ============================================================================
# Target Resolution Tests
# ============================================================================

@pytest.mark.parametrize(
    "mode,raw_path,query,expected",
    [
        ("query_only", b"/ws", b"", "ws://t:8188"),
        ("query_only", b"/ws", b"clientId=abc", "ws://t:8188/ws?clientId=abc"),
        ("query_only", b"/", b"a=1", "ws://t:8188/?a=1"),
        ("always", b"/ws", b"", "ws://t:8188/ws"),
        ("always", b"/a%20b", b"x=%2F", "ws://t:8188/a%20b?x=%2F"),
        ("never", b"/ws", b"clientId=abc", "ws://t:8188"),
    ],
)
def test_resolve_target_url(mode, raw_path, query, expected):
    assert resolve_target_url("ws://t:8188", raw_path, query, mode) == expected
