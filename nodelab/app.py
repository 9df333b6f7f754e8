# nodelab/app.py
from contextlib import contextmanager
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIServer, make_server
import json
import logging
import re
import sys
import threading

from nodelab.config import settings
from nodelab.database.database import SessionLocal
from nodelab.database.db_init import initialize_db
from nodelab.log_setup import setup_logging
from nodelab.repositories.sqlalchemy import SqlalchemyImageRepository, SqlalchemyNodeRepository
from nodelab.services.console_gateway import GuacamoleGateway
from nodelab.services.exceptions import (
    ConflictError,
    GatewayError,
    NotFoundError,
    PortPoolExhaustedError,
    StorageError,
    VmLaunchError,
)
from nodelab.services.image_service import ImageService
from nodelab.services.lifecycle_service import LifecycleService
from nodelab.services.overlay_store import OverlayStore
from nodelab.services.port_allocator import PortAllocator
from nodelab.services.reconciler import ReconciliationWorker

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------
## 프로세스 전역 구성 요소 (포트 풀, 하이퍼바이저 연결, 게이트웨이)
# --------------------------------------------------------------------------

_shared = None
_shared_lock = threading.Lock()


def get_shared_components():
    """요청 사이에 공유해야 하는 구성 요소를 한 번만 만들어 반환합니다."""
    global _shared
    with _shared_lock:
        if _shared is None:
            # libvirt 바인딩은 실제로 하이퍼바이저가 필요할 때만 불러옵니다.
            from nodelab.services.vm_supervisor import LibvirtSupervisor
            _shared = {
                'overlay_store': OverlayStore(),
                'port_allocator': PortAllocator(),
                'supervisor': LibvirtSupervisor(),
                'gateway': GuacamoleGateway(),
            }
        return _shared


def build_services(db_session, shared):
    """DB 세션에 묶인 리포지토리와 서비스를 조립합니다. (Repositories -> Services)"""
    node_repo = SqlalchemyNodeRepository(db_session)
    image_repo = SqlalchemyImageRepository(db_session)

    image_service = ImageService(image_repo, node_repo)
    lifecycle_service = LifecycleService(
        node_repo,
        image_service,
        shared['overlay_store'],
        shared['port_allocator'],
        shared['supervisor'],
        shared['gateway'],
    )
    return {
        'image': image_service,
        'lifecycle': lifecycle_service,
    }


@contextmanager
def lifecycle_session():
    """새 세션에 묶인 LifecycleService를 빌려줍니다. (백그라운드 작업용)"""
    db_session = SessionLocal()
    try:
        yield build_services(db_session, get_shared_components())['lifecycle']
    finally:
        db_session.close()

# --------------------------------------------------------------------------
## 요청 처리 유틸리티 함수
# --------------------------------------------------------------------------

def get_request_data(environ):
    try:
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        return json.loads(environ["wsgi.input"].read(content_length)) if content_length > 0 else {}
    except (ValueError, json.JSONDecodeError):
        raise ValueError("Invalid or missing JSON body.")

def require_fields(data, *fields):
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise ValueError(f"Missing required field(s): {', '.join(missing)}")

def handle_exception(e):
    error_map = {
        NotFoundError: "404 Not Found",
        ConflictError: "409 Conflict",
        PortPoolExhaustedError: "503 Service Unavailable",
        GatewayError: "502 Bad Gateway",
        StorageError: "500 Internal Server Error",
        VmLaunchError: "500 Internal Server Error",
        ValueError: "400 Bad Request",
    }
    status = next((error_map[cls] for cls in type(e).__mro__ if cls in error_map), "500 Internal Server Error")
    if status.startswith("5"):
        logger.error("Request failed: %s: %s", type(e).__name__, e)
    return status, json.dumps({"error": str(e), "kind": type(e).__name__})

# --------------------------------------------------------------------------
## WSGI 애플리케이션 (의존성 주입 및 라우팅)
# --------------------------------------------------------------------------

ROUTES = []

def route(method, pattern):
    def decorator(handler):
        ROUTES.append((method, re.compile(pattern), handler))
        return handler
    return decorator


def application(environ, start_response):
    db_session = SessionLocal()
    try:
        # 1. 의존성 생성 후 environ을 통해 핸들러에 전달
        environ['services'] = build_services(db_session, get_shared_components())

        # 2. 라우팅 및 핸들러 실행
        path = environ.get("PATH_INFO", "")
        method = environ.get("REQUEST_METHOD", "")

        handler, path_args = None, []
        for route_method, pattern, route_handler in ROUTES:
            if method == route_method and (match := pattern.match(path)):
                handler, path_args = route_handler, match.groups()
                break

        if handler:
            status, response_body = handler(environ, *path_args)
        else:
            status, response_body = '404 Not Found', json.dumps({'error': 'Not Found'})

    except Exception as e:
        status, response_body = handle_exception(e)
    finally:
        db_session.close()

    start_response(status, [("Content-Type", "application/json")])
    return [response_body.encode("utf-8")]

# --------------------------------------------------------------------------
## 핸들러 함수
# --------------------------------------------------------------------------

@route('GET', r'^/v1/images$')
def list_images_handler(environ, *args):
    images = environ['services']['image'].list_images()
    return '200 OK', json.dumps({"images": images})

@route('POST', r'^/v1/images$')
def create_image_handler(environ, *args):
    data = get_request_data(environ)
    require_fields(data, 'name', 'path')
    image_service = environ['services']['image']
    image = image_service.create_image(
        name=data['name'],
        path=data['path'],
        parent_id=data.get('parent_id'),
        description=data.get('description'),
    )
    return '201 Created', json.dumps(image_service.to_dict(image))

@route('GET', r'^/v1/images/([a-zA-Z0-9_-]+)$')
def get_image_handler(environ, image_id):
    return '200 OK', json.dumps(environ['services']['image'].describe(image_id))

@route('DELETE', r'^/v1/images/([a-zA-Z0-9_-]+)$')
def delete_image_handler(environ, image_id):
    environ['services']['image'].delete(image_id)
    return '204 No Content', ''

@route('GET', r'^/v1/nodes$')
def list_nodes_handler(environ, *args):
    nodes = environ['services']['lifecycle'].list_nodes()
    return '200 OK', json.dumps({"nodes": nodes})

@route('POST', r'^/v1/nodes$')
def create_node_handler(environ, *args):
    data = get_request_data(environ)
    require_fields(data, 'name', 'image_id')
    node = environ['services']['lifecycle'].create_node(data['name'], data['image_id'])
    return '201 Created', json.dumps(node)

@route('GET', r'^/v1/nodes/([a-zA-Z0-9_-]+)$')
def get_node_handler(environ, node_id):
    return '200 OK', json.dumps(environ['services']['lifecycle'].get_node(node_id))

@route('POST', r'^/v1/nodes/([a-zA-Z0-9_-]+)/run$')
def run_node_handler(environ, node_id):
    return '200 OK', json.dumps(environ['services']['lifecycle'].run_node(node_id))

@route('POST', r'^/v1/nodes/([a-zA-Z0-9_-]+)/stop$')
def stop_node_handler(environ, node_id):
    return '200 OK', json.dumps(environ['services']['lifecycle'].stop_node(node_id))

@route('POST', r'^/v1/nodes/([a-zA-Z0-9_-]+)/wipe$')
def wipe_node_handler(environ, node_id):
    environ['services']['lifecycle'].wipe_node(node_id)
    return '200 OK', json.dumps({"message": f"Node '{node_id}' wiped."})

@route('POST', r'^/v1/actions/reconcile$')
def reconcile_nodes_handler(environ, *args):
    result = environ['services']['lifecycle'].reconcile()
    return '200 OK', json.dumps(result)

# --------------------------------------------------------------------------
## 서버 실행
# --------------------------------------------------------------------------

class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


def main():
    setup_logging(settings.log_level, settings.log_file)
    initialize_db()

    with lifecycle_session() as lifecycle:
        summary = lifecycle.recover()
    logger.info("Startup recovery finished: %s", summary)

    worker = ReconciliationWorker(lifecycle_session, settings.reconcile_interval_seconds)
    worker.start()
    try:
        with make_server(settings.server_host, settings.server_port, application, server_class=ThreadingWSGIServer) as httpd:
            logger.info("Serving nodelab on port %d...", settings.server_port)
            httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    except Exception as e:
        logger.error("Error starting server: %s", e)
        sys.exit(1)
    finally:
        worker.stop()


if __name__ == "__main__":
    main()
