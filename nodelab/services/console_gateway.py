"""Guacamole REST API를 통해 노드 VNC 콘솔 연결을 등록/해제하는 어댑터."""

import base64
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Tuple

import httpx

from nodelab.config import settings
from nodelab.services.exceptions import GatewayError
from nodelab.utils.paths import sanitize_identifier

logger = logging.getLogger(__name__)


class IConsoleGateway(ABC):
    @abstractmethod
    def register_console(self, node_id: str, port: int) -> str:
        """port를 가리키는 콘솔 연결을 만들고 연결 ID를 반환합니다."""
        pass

    @abstractmethod
    def deregister_console(self, connection_id: str) -> bool:
        """연결을 삭제합니다. 게이트웨이에 없는 ID는 이미 삭제된 것으로 봅니다."""
        pass

    @abstractmethod
    def console_info(self, connection_id: str) -> Dict[str, str]:
        """브라우저에서 연결을 열 때 필요한 URL들을 반환합니다."""
        pass


def compute_websocket_url(base_http_url: str, tunnel_path: str) -> str:
    """http(s) 기반 URL과 터널 경로로 ws(s) 터널 URL을 만듭니다."""
    if base_http_url.startswith("https://"):
        scheme, remainder = "wss://", base_http_url[len("https://"):]
    elif base_http_url.startswith("http://"):
        scheme, remainder = "ws://", base_http_url[len("http://"):]
    else:
        scheme, remainder = "ws://", base_http_url
    return f"{scheme}{remainder.strip('/')}/{tunnel_path.strip('/')}"


class GuacamoleGateway(IConsoleGateway):
    """
    Guacamole 연결 정보를 관리하는 상태 없는 어댑터.

    로컬에는 노드 레코드에 저장된 연결 ID 외에 게이트웨이 측 상태를 캐시하지 않습니다.
    호출마다 토큰을 새로 발급받고, 호출이 끝나면 성공 여부와 관계없이 폐기합니다.
    """

    def __init__(self, base_url: Optional[str] = None, username: Optional[str] = None, password: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = (base_url or settings.guac_url).strip().rstrip("/")
        self.api_url = f"{self.base_url}/{settings.guac_api_path.strip('/')}"
        self.tunnel_url = f"{self.base_url}/{settings.guac_tunnel_path.strip('/')}"
        self.websocket_url = compute_websocket_url(self.base_url, settings.guac_tunnel_path)
        self.username = username or settings.guac_user
        self.password = password or settings.guac_pass
        self.connection_prefix = sanitize_identifier(settings.guac_connection_prefix)
        self.vnc_host = settings.vnc_host
        self.data_source = settings.guac_data_source
        self.timeout = settings.gateway_timeout_seconds if timeout is None else timeout
        self._transport = transport

    def connection_name_for(self, node_id: str) -> str:
        return f"{self.connection_prefix}-{sanitize_identifier(node_id)}"

    def register_console(self, node_id: str, port: int) -> str:
        """
        노드의 VNC 포트를 가리키는 Guacamole 연결을 생성합니다.

        Args:
            node_id: 연결을 소유할 노드의 ID. 연결 이름에 사용됩니다.
            port: 노드가 VNC를 노출하는 포트.

        Returns:
            Guacamole가 발급한 연결 식별자.

        Raises:
            GatewayError: 인증 또는 연결 생성이 실패했거나 시간 초과되었을 때.
        """
        payload = {
            "name": self.connection_name_for(node_id),
            "parentIdentifier": "ROOT",
            "protocol": "vnc",
            "parameters": {
                "hostname": self.vnc_host,
                "port": str(port),
            },
            "attributes": {
                "max-connections": "",
                "max-connections-per-user": "",
            },
        }
        with self._session() as (client, token, data_source):
            connections_url = f"{self.api_url}/session/data/{data_source}/connections"
            try:
                response = client.post(connections_url, json=payload, headers={"Guacamole-Token": token})
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise GatewayError(f"Failed to create connection: HTTP {e.response.status_code}") from e
            except httpx.HTTPError as e:
                raise GatewayError(f"Failed to create connection: {e}") from e

            try:
                connection_id = str(response.json()["identifier"])
            except (ValueError, KeyError, TypeError) as e:
                # 연결은 이미 만들어졌을 수 있음
                logger.error("Create-connection response for %s carried no identifier; removing it by name", payload["name"])
                self._delete_by_name(client, token, connections_url, payload["name"])
                raise GatewayError(f"Unexpected create-connection response: {e}") from e

        logger.info("Registered console connection %s for node %s (port %d)", connection_id, node_id, port)
        return connection_id

    def deregister_console(self, connection_id: str) -> bool:
        """
        Guacamole 연결을 삭제합니다.

        게이트웨이와 로컬 상태는 어긋날 수 있으므로, 404는 이미 삭제된 것으로 처리합니다.

        Raises:
            GatewayError: 인증 실패, 404 외의 오류 응답, 통신 실패 시.
        """
        with self._session() as (client, token, data_source):
            try:
                response = client.delete(
                    f"{self.api_url}/session/data/{data_source}/connections/{connection_id}",
                    headers={"Guacamole-Token": token},
                )
            except httpx.HTTPError as e:
                raise GatewayError(f"Failed to delete connection {connection_id}: {e}") from e

        if response.status_code == 404:
            logger.info("Console connection %s already absent from gateway", connection_id)
            return True
        if response.is_error:
            raise GatewayError(f"Failed to delete connection {connection_id}: HTTP {response.status_code}")

        logger.info("Deregistered console connection %s", connection_id)
        return True

    def client_url(self, connection_id: str) -> str:
        # Guacamole 클라이언트 식별자: base64("<id>\0c\0<dataSource>")
        raw = f"{connection_id}\0c\0{self.data_source}".encode("utf-8")
        identifier = base64.b64encode(raw).decode("ascii").rstrip("=")
        return f"{self.base_url}/#/client/{identifier}"

    def console_info(self, connection_id: str) -> Dict[str, str]:
        return {
            "connection_id": connection_id,
            "client_url": self.client_url(connection_id),
            "tunnel_url": self.tunnel_url,
            "websocket_url": self.websocket_url,
        }

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self._transport)

    @contextmanager
    def _session(self) -> Iterator[Tuple[httpx.Client, str, str]]:
        """인증된 (client, token, data_source)를 제공하고, 끝나면 토큰을 폐기합니다."""
        with self._client() as client:
            token, data_source = self._authenticate(client)
            try:
                yield client, token, data_source
            finally:
                self._revoke(client, token)

    def _revoke(self, client: httpx.Client, token: str):
        try:
            response = client.delete(f"{self.api_url}/tokens/{token}", headers={"Guacamole-Token": token})
            if response.is_error and response.status_code != 404:
                logger.warning("Failed to revoke Guacamole token: HTTP %d", response.status_code)
        except httpx.HTTPError as e:
            logger.warning("Failed to revoke Guacamole token: %s", e)

    def _delete_by_name(self, client: httpx.Client, token: str, connections_url: str, name: str):
        """이름이 name인 연결을 모두 삭제합니다. 실패는 기록만 합니다."""
        headers = {"Guacamole-Token": token}
        try:
            response = client.get(connections_url, headers=headers)
            response.raise_for_status()
            connections = response.json()
            matches = [str(c["identifier"]) for c in connections.values() if c.get("name") == name]
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("Could not look up connection %s for cleanup: %s", name, e)
            return
        for identifier in matches:
            try:
                client.delete(f"{connections_url}/{identifier}", headers=headers).raise_for_status()
                logger.warning("Removed unidentified connection %s (%s)", identifier, name)
            except httpx.HTTPError as e:
                logger.error("Failed to remove connection %s (%s): %s", identifier, name, e)

    def _authenticate(self, client: httpx.Client) -> Tuple[str, str]:
        try:
            response = client.post(
                f"{self.api_url}/tokens",
                data={"username": self.username, "password": self.password},
            )
            response.raise_for_status()
            body = response.json()
            return body["authToken"], body.get("dataSource", self.data_source)
        except httpx.HTTPStatusError as e:
            raise GatewayError(f"Guacamole authentication failed: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Guacamole authentication failed: {e}") from e
        except (ValueError, KeyError) as e:
            raise GatewayError(f"Unexpected authentication response: {e}") from e
