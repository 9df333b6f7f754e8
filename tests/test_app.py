# tests/test_app.py
import io
import json

import pytest
from unittest.mock import MagicMock, patch
from wsgiref.util import setup_testing_defaults

from nodelab import app
from nodelab.services.exceptions import (
    GatewayError,
    ImageInUseError,
    InvalidPathError,
    NodeNotFoundError,
    NodeStateConflictError,
    PortPoolExhaustedError,
    StorageError,
)
from nodelab.services.image_service import ImageService
from nodelab.services.lifecycle_service import LifecycleService

# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def services():
    """요청마다 조립되는 서비스 대신 사용할 모의 객체들."""
    return {
        "image": MagicMock(spec=ImageService),
        "lifecycle": MagicMock(spec=LifecycleService),
    }

@pytest.fixture
def client(services):
    """WSGI 애플리케이션을 직접 호출하는 간단한 클라이언트. (status, body)를 반환합니다."""
    with patch.object(app, "SessionLocal"), \
            patch.object(app, "get_shared_components", return_value={}), \
            patch.object(app, "build_services", return_value=services):

        def call(method, path, body=None):
            environ = {}
            setup_testing_defaults(environ)
            raw = json.dumps(body).encode("utf-8") if body is not None else b""
            environ.update({
                "REQUEST_METHOD": method,
                "PATH_INFO": path,
                "CONTENT_LENGTH": str(len(raw)),
                "wsgi.input": io.BytesIO(raw),
            })
            captured = {}

            def start_response(status, headers):
                captured["status"] = status

            chunks = app.application(environ, start_response)
            payload = b"".join(chunks).decode("utf-8")
            return captured["status"], json.loads(payload) if payload else None

        yield call

# ===================================================================
#  라우팅 테스트
# ===================================================================
class TestNodeRoutes:
    def test_list_nodes(self, client, services):
        services["lifecycle"].list_nodes.return_value = [{"id": "n1", "status": "Stopped"}]

        status, body = client("GET", "/v1/nodes")

        assert status == "200 OK"
        assert body == {"nodes": [{"id": "n1", "status": "Stopped"}]}

    def test_create_node(self, client, services):
        services["lifecycle"].create_node.return_value = {"id": "n1", "name": "r1", "status": "Stopped"}

        status, body = client("POST", "/v1/nodes", {"name": "r1", "image_id": "img-base"})

        assert status == "201 Created"
        services["lifecycle"].create_node.assert_called_once_with("r1", "img-base")

    def test_create_node_missing_fields(self, client, services):
        status, body = client("POST", "/v1/nodes", {"name": "r1"})

        assert status == "400 Bad Request"
        assert "image_id" in body["error"]
        services["lifecycle"].create_node.assert_not_called()

    def test_run_node(self, client, services):
        services["lifecycle"].run_node.return_value = {"id": "n1", "status": "Running", "vnc_port": 5900}

        status, body = client("POST", "/v1/nodes/n1/run")

        assert status == "200 OK"
        assert body["vnc_port"] == 5900
        services["lifecycle"].run_node.assert_called_once_with("n1")

    def test_stop_and_wipe(self, client, services):
        services["lifecycle"].stop_node.return_value = {"id": "n1", "status": "Stopped"}

        assert client("POST", "/v1/nodes/n1/stop")[0] == "200 OK"
        assert client("POST", "/v1/nodes/n1/wipe")[0] == "200 OK"
        services["lifecycle"].wipe_node.assert_called_once_with("n1")

    def test_reconcile(self, client, services):
        services["lifecycle"].reconcile.return_value = {"corrected": [], "orphans": []}

        status, body = client("POST", "/v1/actions/reconcile")

        assert status == "200 OK"
        assert body == {"corrected": [], "orphans": []}

    def test_unknown_route(self, client):
        assert client("GET", "/v1/unknown")[0] == "404 Not Found"


class TestImageRoutes:
    def test_create_image(self, client, services):
        services["image"].create_image.return_value = MagicMock()
        services["image"].to_dict.return_value = {"id": "img-1", "name": "frr"}

        status, body = client("POST", "/v1/images", {"name": "frr", "path": "frr.qcow2", "parent_id": "img-base"})

        assert status == "201 Created"
        assert body == {"id": "img-1", "name": "frr"}
        services["image"].create_image.assert_called_once_with(
            name="frr", path="frr.qcow2", parent_id="img-base", description=None,
        )

    def test_delete_image_in_use(self, client, services):
        services["image"].delete.side_effect = ImageInUseError("in use")

        status, body = client("DELETE", "/v1/images/img-base")

        assert status == "409 Conflict"
        assert body["kind"] == "ImageInUseError"

# ===================================================================
#  오류 매핑 테스트
# ===================================================================
@pytest.mark.parametrize("error, expected_status", [
    (NodeNotFoundError("missing"), "404 Not Found"),
    (NodeStateConflictError("busy"), "409 Conflict"),
    (PortPoolExhaustedError("full"), "503 Service Unavailable"),
    (GatewayError("down"), "502 Bad Gateway"),
    (StorageError("disk"), "500 Internal Server Error"),
    (InvalidPathError("../x"), "400 Bad Request"),
    (RuntimeError("unexpected"), "500 Internal Server Error"),
])
def test_handle_exception_maps_error_kinds(error, expected_status):
    status, body = app.handle_exception(error)

    assert status == expected_status
    assert json.loads(body)["error"] == str(error)
