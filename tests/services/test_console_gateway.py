# tests/services/test_console_gateway.py
import base64
import json

import httpx
import pytest

from nodelab.services.console_gateway import GuacamoleGateway, compute_websocket_url
from nodelab.services.exceptions import GatewayError

BASE_URL = "http://guac.local:8080/guacamole"
API = f"{BASE_URL}/api"

# ===================================================================
#  가짜 Guacamole 서버
# ===================================================================

class FakeGuacamole:
    """httpx.MockTransport에 연결되는 최소한의 Guacamole REST API."""
    def __init__(self, auth_status=200, create_status=200, delete_status=204, create_body=None, existing=None):
        self.auth_status = auth_status
        self.create_body = {"identifier": "17", "name": "whatever"} if create_body is None else create_body
        self.existing = existing or {}
        self.create_status = create_status
        self.delete_status = delete_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path.endswith("/api/tokens"):
            if self.auth_status != 200:
                return httpx.Response(self.auth_status, json={"message": "Permission denied."})
            return httpx.Response(200, json={"authToken": "tok-123", "dataSource": "postgresql"})
        if request.method == "DELETE" and "/api/tokens/" in path:
            return httpx.Response(204)
        if request.method == "POST" and path.endswith("/connections"):
            if self.create_status != 200:
                return httpx.Response(self.create_status, json={"message": "boom"})
            return httpx.Response(200, json=self.create_body)
        if request.method == "GET" and path.endswith("/connections"):
            return httpx.Response(200, json=self.existing)
        if request.method == "DELETE" and "/connections/" in path:
            return httpx.Response(self.delete_status)
        return httpx.Response(404)

def make_gateway(server) -> GuacamoleGateway:
    return GuacamoleGateway(
        base_url=BASE_URL, username="admin", password="secret", timeout=1,
        transport=httpx.MockTransport(server),
    )

# ===================================================================
#  register_console 테스트 스위트
# ===================================================================
class TestRegisterConsole:
    def test_register_console_success(self):
        """토큰 발급 후 VNC 연결을 만들고 식별자를 돌려주는지 테스트합니다."""
        # === Arrange ===
        server = FakeGuacamole()
        gateway = make_gateway(server)

        # === Act ===
        connection_id = gateway.register_console("node-1", 5901)

        # === Assert ===
        assert connection_id == "17"
        auth, create, revoke = server.requests
        assert str(auth.url) == f"{API}/tokens"
        assert b"username=admin" in auth.content
        assert str(create.url) == f"{API}/session/data/postgresql/connections"
        assert create.headers["Guacamole-Token"] == "tok-123"

        payload = json.loads(create.content)
        assert payload["protocol"] == "vnc"
        assert payload["name"] == "nodelab-node-1"
        assert payload["parameters"]["port"] == "5901"

        # 사용한 토큰은 폐기되어야 함
        assert revoke.method == "DELETE"
        assert str(revoke.url) == f"{API}/tokens/tok-123"

    def test_register_console_auth_failure(self):
        gateway = make_gateway(FakeGuacamole(auth_status=403))

        with pytest.raises(GatewayError):
            gateway.register_console("node-1", 5901)

    def test_register_console_create_failure(self):
        server = FakeGuacamole(create_status=500)
        gateway = make_gateway(server)

        with pytest.raises(GatewayError):
            gateway.register_console("node-1", 5901)

        # 실패한 호출에서도 토큰은 폐기되어야 함
        assert str(server.requests[-1].url) == f"{API}/tokens/tok-123"
        assert server.requests[-1].method == "DELETE"

    def test_register_console_without_identifier_removes_created_connection(self):
        """생성 응답에 식별자가 없으면 이름으로 연결을 찾아 지운 뒤 GatewayError로 보고되는지 테스트합니다."""
        # === Arrange ===
        # 시나리오: 연결은 만들어졌지만 응답 본문이 예상과 다름
        server = FakeGuacamole(
            create_body={"message": "created"},
            existing={
                "17": {"identifier": "17", "name": "nodelab-node-1"},
                "18": {"identifier": "18", "name": "nodelab-node-2"},
            },
        )
        gateway = make_gateway(server)

        # === Act & Assert ===
        with pytest.raises(GatewayError):
            gateway.register_console("node-1", 5901)

        deleted = [str(r.url) for r in server.requests if r.method == "DELETE"]
        assert deleted == [
            f"{API}/session/data/postgresql/connections/17",
            f"{API}/tokens/tok-123",
        ]

    def test_register_console_unreachable(self):
        """게이트웨이에 연결할 수 없으면 GatewayError로 보고되는지 테스트합니다."""
        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)
        gateway = make_gateway(refuse)

        with pytest.raises(GatewayError):
            gateway.register_console("node-1", 5901)

# ===================================================================
#  deregister_console 테스트 스위트
# ===================================================================
class TestDeregisterConsole:
    def test_deregister_console_success(self):
        server = FakeGuacamole()

        assert make_gateway(server).deregister_console("17") is True
        delete, revoke = server.requests[1:]
        assert str(delete.url) == f"{API}/session/data/postgresql/connections/17"
        assert str(revoke.url) == f"{API}/tokens/tok-123"

    def test_deregister_missing_connection_is_success(self):
        """게이트웨이에 이미 없는 연결(404)은 해제된 것으로 처리되는지 테스트합니다."""
        assert make_gateway(FakeGuacamole(delete_status=404)).deregister_console("17") is True

    def test_deregister_console_server_error(self):
        with pytest.raises(GatewayError):
            make_gateway(FakeGuacamole(delete_status=500)).deregister_console("17")

# ===================================================================
#  URL 계산 테스트
# ===================================================================
def test_console_info_builds_client_url():
    gateway = make_gateway(FakeGuacamole())

    info = gateway.console_info("17")

    identifier = info["client_url"].rsplit("/", 1)[-1]
    padded = identifier + "=" * (-len(identifier) % 4)
    assert base64.b64decode(padded) == b"17\x00c\x00postgresql"
    assert info["connection_id"] == "17"
    assert info["tunnel_url"] == f"{BASE_URL}/websocket-tunnel"
    assert info["websocket_url"] == "ws://guac.local:8080/guacamole/websocket-tunnel"

@pytest.mark.parametrize("base, expected", [
    ("https://guac.example.com/guacamole/", "wss://guac.example.com/guacamole/websocket-tunnel"),
    ("http://10.0.0.5:8080/guacamole", "ws://10.0.0.5:8080/guacamole/websocket-tunnel"),
    ("guac.local", "ws://guac.local/websocket-tunnel"),
])
def test_compute_websocket_url(base, expected):
    assert compute_websocket_url(base, "/websocket-tunnel") == expected
