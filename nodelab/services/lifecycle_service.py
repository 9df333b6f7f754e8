import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from nodelab.database import models
from nodelab.database.models import NodeStatus
from nodelab.repositories.interfaces import INodeRepository
from nodelab.services.console_gateway import IConsoleGateway
from nodelab.services.exceptions import (
    GatewayError,
    NodeAlreadyExistsError,
    NodeNotFoundError,
    NodeStateConflictError,
    StorageError,
)
from nodelab.services.image_service import ImageService
from nodelab.services.overlay_store import OverlayStore
from nodelab.services.port_allocator import PortAllocator
from nodelab.services.supervisor_base import IVmSupervisor, ProcessHandle

logger = logging.getLogger(__name__)


class LifecycleService:
    """
    노드의 생성/실행/중지/초기화(wipe)를 조율하는 최상위 서비스.

    한 노드에 대한 작업은 노드 레코드의 조건부 상태 전이로만 직렬화됩니다.
    느린 작업(qemu-img, libvirt, Guacamole 호출) 동안 전역 락을 잡지 않습니다.
    """

    def __init__(self, node_repo: INodeRepository, image_service: ImageService, overlay_store: OverlayStore,
                 port_allocator: PortAllocator, supervisor: IVmSupervisor, gateway: IConsoleGateway):
        self.node_repo = node_repo
        self.image_service = image_service
        self.overlay_store = overlay_store
        self.port_allocator = port_allocator
        self.supervisor = supervisor
        self.gateway = gateway

    # ------------------------------------------------------------------
    # create / run / stop / wipe
    # ------------------------------------------------------------------

    def create_node(self, name: str, image_id: str) -> Dict[str, Any]:
        """
        이미지에서 새 노드를 만듭니다. 노드는 Stopped 상태로 시작합니다.

        인스턴스 오버레이를 먼저 만든 뒤 레코드를 저장하며, 저장에 실패하면 오버레이를 지웁니다.

        Args:
            name: 노드 이름. 전체에서 유일해야 합니다.
            image_id: 노드가 기반으로 할 카탈로그 이미지의 ID.

        Returns:
            생성된 노드 정보 딕셔너리.

        Raises:
            ValueError: 이름이 비어있을 때.
            ImageNotFoundError: 이미지를 찾을 수 없을 때.
            NodeAlreadyExistsError: 동일한 이름의 노드가 이미 존재할 때.
            OverlayCollisionError: 오버레이 경로에 파일이 이미 있을 때.
            StorageError: 오버레이 생성에 실패했을 때.
        """
        if not name or not name.strip():
            raise ValueError("Node name must not be empty.")

        image = self.image_service.resolve(image_id)
        base_image_path = self.image_service.get_full_path(image)
        if self.node_repo.find_by_name(name):
            raise NodeAlreadyExistsError(f"Node name '{name}' already exists.")

        node_id = str(uuid.uuid4())
        overlay_path = self.overlay_store.allocate(base_image_path, node_id)

        new_node = models.Node(
            id=node_id,
            name=name,
            status=NodeStatus.STOPPED.value,
            image_id=image.id,
            instance_overlay_path=overlay_path,
        )
        try:
            created = self.node_repo.create(new_node)
        except IntegrityError as e:
            logger.warning("Node '%s' insert failed: %s. Releasing overlay...", name, e)
            self._release_overlay_quietly(overlay_path)
            raise NodeAlreadyExistsError(f"Node '{name}' collides with an existing node.") from e
        except Exception:
            logger.exception("Node '%s' insert failed. Releasing overlay...", name)
            self._release_overlay_quietly(overlay_path)
            raise

        logger.info("Created node '%s' (%s) from image '%s'", name, node_id, image.name)
        return self._to_dict(created)

    def run_node(self, node_id: str) -> Dict[str, Any]:
        """
        Stopped 상태의 노드를 실행합니다.

        순서: Stopped→Starting 점유 → 포트 할당 → 하이퍼바이저 시작 → 콘솔 등록
        → 포트/연결 ID와 함께 Running 기록. 어느 단계든 실패하면 이미 끝난 단계를
        역순으로 되돌리고(콘솔 해제 → 프로세스 중지 → 포트 반환 → Stopped 복귀) 예외를 올립니다.

        Raises:
            NodeNotFoundError: 노드를 찾을 수 없을 때.
            NodeStateConflictError: 노드가 Stopped 상태가 아닐 때 (동시 실행 요청 포함).
            PortPoolExhaustedError: 빈 VNC 포트가 없을 때.
            VmLaunchError: 하이퍼바이저 인스턴스를 시작하지 못했을 때.
            GatewayError: 콘솔 연결 등록에 실패했을 때.
        """
        node = self._get(node_id)
        if not self.node_repo.transition(node_id, NodeStatus.STOPPED, NodeStatus.STARTING):
            raise NodeStateConflictError(
                f"Node '{node_id}' cannot be started from status '{self._current_status(node_id)}'."
            )

        port = None
        handle = None
        connection_id = None
        try:
            port = self.port_allocator.acquire()
            overlay_filepath = self.overlay_store.resolve(node.instance_overlay_path)
            handle = self.supervisor.start(node_id, overlay_filepath, port)
            connection_id = self.gateway.register_console(node_id, port)

            if not self.node_repo.transition(
                node_id, NodeStatus.STARTING, NodeStatus.RUNNING,
                vnc_port=port, guacamole_connection_id=connection_id,
            ):
                raise NodeStateConflictError(f"Node '{node_id}' changed state while starting.")

        except Exception as e:
            logger.warning("Run of node '%s' failed: %s. Starting rollback...", node_id, e)
            self._rollback_run(node_id, port, handle, connection_id)
            raise

        logger.info("Node '%s' is running (VNC port %d, connection %s)", node_id, port, connection_id)
        return self._to_dict(self._get(node_id))

    def _rollback_run(self, node_id: str, port: Optional[int], handle: Optional[ProcessHandle], connection_id: Optional[str]):
        if connection_id:
            try:
                self.gateway.deregister_console(connection_id)
            except GatewayError as e:
                logger.warning("Rollback Warning: failed to deregister console %s: %s", connection_id, e)

        if handle:
            try:
                if not self.supervisor.stop(handle):
                    logger.warning("Rollback Warning: domain for node '%s' is still alive", node_id)
            except Exception:
                logger.exception("Rollback Warning: failed to stop domain for node '%s'", node_id)

        if port is not None:
            self.port_allocator.release(port)

        if not self.node_repo.transition(node_id, NodeStatus.STARTING, NodeStatus.STOPPED):
            logger.error("Rollback Warning: node '%s' was not in Starting state during rollback", node_id)

    def stop_node(self, node_id: str) -> Dict[str, Any]:
        """
        Running 상태의 노드를 중지합니다.

        콘솔 해제, 프로세스 중지, 포트 반환은 각각 최선을 다해 수행하며, 일부가 실패해도
        나머지를 계속 진행하고 노드를 Stopped로 만듭니다. 프로세스가 이미 외부에서 죽었더라도
        오류 없이 정리됩니다.

        Raises:
            NodeNotFoundError: 노드를 찾을 수 없을 때.
            NodeStateConflictError: 노드가 Running 상태가 아닐 때.
        """
        self._get(node_id)
        if not self.node_repo.transition(node_id, NodeStatus.RUNNING, NodeStatus.STOPPING):
            raise NodeStateConflictError(
                f"Node '{node_id}' cannot be stopped from status '{self._current_status(node_id)}'."
            )

        self._finish_stop(self._get(node_id))
        logger.info("Node '%s' stopped", node_id)
        return self._to_dict(self._get(node_id))

    def _finish_stop(self, node: models.Node):
        """Stopping으로 점유한 노드의 자원을 정리하고 Stopped로 기록합니다."""
        node_id = node.id
        self._teardown(node_id, node.vnc_port, node.guacamole_connection_id)
        if not self.node_repo.transition(
            node_id, NodeStatus.STOPPING, NodeStatus.STOPPED,
            vnc_port=None, guacamole_connection_id=None,
        ):
            logger.error("Node '%s' left Stopping state unexpectedly", node_id)

    def _teardown(self, node_id: str, port: Optional[int], connection_id: Optional[str]):
        if connection_id:
            try:
                self.gateway.deregister_console(connection_id)
            except GatewayError as e:
                logger.warning("Failed to deregister console %s for node '%s': %s. Proceeding cleanup.", connection_id, node_id, e)

        try:
            if not self.supervisor.stop(self.supervisor.handle_for(node_id, port)):
                logger.warning("Domain for node '%s' is still alive; leaving it to reconciliation", node_id)
        except Exception:
            logger.exception("Failed to stop domain for node '%s'. Proceeding cleanup.", node_id)

        self.port_allocator.release(port)

    def wipe_node(self, node_id: str) -> bool:
        """
        Stopped 상태의 노드의 인스턴스 오버레이와 레코드를 삭제합니다.

        Raises:
            NodeNotFoundError: 노드를 찾을 수 없을 때.
            NodeStateConflictError: 노드가 Stopped 상태가 아닐 때.
            StorageError: 오버레이 파일 삭제에 실패했을 때. 노드는 Stopped로 되돌아갑니다.
        """
        self._get(node_id)
        if not self.node_repo.transition(node_id, NodeStatus.STOPPED, NodeStatus.WIPING):
            raise NodeStateConflictError(
                f"Node '{node_id}' cannot be wiped from status '{self._current_status(node_id)}'."
            )

        self._finish_wipe(self._get(node_id))
        logger.info("Node '%s' wiped", node_id)
        return True

    def _finish_wipe(self, node: models.Node):
        try:
            self.overlay_store.release(node.instance_overlay_path)
        except StorageError:
            self.node_repo.transition(node.id, NodeStatus.WIPING, NodeStatus.STOPPED)
            raise
        self.node_repo.delete(node)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def list_nodes(self) -> List[Dict[str, Any]]:
        """
        모든 노드의 목록을 반환합니다.

        Running으로 기록되어 있지만 하이퍼바이저 인스턴스가 죽은 노드는
        조회 과정에서 Stopped로 바로잡힙니다.
        """
        running_ids = [node.id for node in self.node_repo.list_all() if node.status == NodeStatus.RUNNING.value]
        for node_id in running_ids:
            self._correct_if_dead(node_id)
        return [self._to_dict(node) for node in self.node_repo.list_all()]

    def get_node(self, node_id: str) -> Dict[str, Any]:
        """노드 정보와 기반 이미지의 조상 체인을 함께 반환합니다."""
        if self._get(node_id).status == NodeStatus.RUNNING.value:
            self._correct_if_dead(node_id)
        node = self._get(node_id)
        return {
            "node": self._to_dict(node),
            "image": self.image_service.describe(node.image_id),
        }

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------

    def reconcile(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        하이퍼바이저 상태를 기준으로 레코드를 바로잡습니다.

        1. Running으로 기록됐지만 인스턴스가 죽은 노드 → 중지 절차를 밟아 Stopped로 기록.
        2. 이 관리자가 만든 도메인 중 Running/Starting/Stopping 노드에 속하지 않는 것(고아) → 종료.

        Returns:
            바로잡은 노드와 종료한 고아 도메인 목록.
        """
        # 노드 목록보다 먼저 읽음
        managed_domains = self.supervisor.list_managed_domains()

        corrected = []
        running = [(node.id, node.name) for node in self.node_repo.list_by_status(NodeStatus.RUNNING)]
        for node_id, name in running:
            if self._correct_if_dead(node_id):
                corrected.append({"id": node_id, "name": name})

        active_ids = {
            node.id for node in self.node_repo.list_by_status(
                NodeStatus.STARTING, NodeStatus.RUNNING, NodeStatus.STOPPING
            )
        }
        orphans = []
        for domain_uuid, domain_name in managed_domains.items():
            if domain_uuid in active_ids:
                continue
            logger.warning("Stopping orphan domain %s (%s)", domain_name, domain_uuid)
            try:
                self.supervisor.stop(self.supervisor.handle_for(domain_uuid))
            except Exception:
                logger.exception("Failed to stop orphan domain %s", domain_name)
                continue
            orphans.append({"uuid": domain_uuid, "name": domain_name})

        return {"corrected": corrected, "orphans": orphans}

    def recover(self) -> Dict[str, Any]:
        """
        관리자 시작 시 한 번 호출되어, 이전 실행에서 남은 상태를 정리합니다.

        Running 노드의 포트를 할당기에 다시 예약하고, 중단된 Starting/Stopping/Wiping 작업을
        마무리한 뒤 조정(reconcile)을 한 번 수행합니다.
        """
        for node in self.node_repo.list_by_status(NodeStatus.RUNNING):
            try:
                self.port_allocator.reserve(node.vnc_port)
            except ValueError as e:
                logger.warning("Node '%s' holds a port outside the pool: %s", node.id, e)

        interrupted = []
        for node_id in self._ids_with_status(NodeStatus.STARTING):
            logger.warning("Node '%s' was interrupted while starting; its console connection (if any) is unknown", node_id)
            self._teardown(node_id, None, None)
            self.node_repo.transition(node_id, NodeStatus.STARTING, NodeStatus.STOPPED)
            interrupted.append(node_id)

        for node_id in self._ids_with_status(NodeStatus.STOPPING):
            node = self.node_repo.find_by_id(node_id)
            if node is not None:
                self._finish_stop(node)
                interrupted.append(node_id)

        for node_id in self._ids_with_status(NodeStatus.WIPING):
            node = self.node_repo.find_by_id(node_id)
            if node is None:
                continue
            try:
                self._finish_wipe(node)
            except StorageError as e:
                logger.error("Could not finish wiping node '%s': %s", node_id, e)
            interrupted.append(node_id)

        result = self.reconcile()
        result["interrupted"] = interrupted
        return result

    def _correct_if_dead(self, node_id: str) -> bool:
        """
        Running 노드의 인스턴스가 죽은 것이 확인되면 중지 절차를 밟아 Stopped로 기록합니다.

        노드가 이미 사라졌거나 Running이 아니면, 또는 하이퍼바이저에 확인할 수 없으면 건드리지 않습니다.
        """
        node = self.node_repo.find_by_id(node_id)
        if node is None or node.status != NodeStatus.RUNNING.value:
            return False
        handle = self.supervisor.handle_for(node_id, node.vnc_port)
        try:
            if self.supervisor.is_alive(handle):
                return False
        except ConnectionError as e:
            logger.warning("Cannot verify domain of node '%s', leaving it Running: %s", node_id, e)
            return False
        if not self.node_repo.transition(node_id, NodeStatus.RUNNING, NodeStatus.STOPPING):
            # 다른 작업이 이미 이 노드를 점유함
            return False
        logger.info("Node '%s' is marked Running but its domain is gone; correcting to Stopped", node_id)
        node = self.node_repo.find_by_id(node_id)
        if node is not None:
            self._finish_stop(node)
        return True

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _get(self, node_id: str) -> models.Node:
        node = self.node_repo.find_by_id(node_id)
        if not node:
            raise NodeNotFoundError(f"Node '{node_id}' not found.")
        return node

    def _ids_with_status(self, status: NodeStatus) -> List[str]:
        return [node.id for node in self.node_repo.list_by_status(status)]

    def _current_status(self, node_id: str) -> str:
        node = self.node_repo.find_by_id(node_id)
        return node.status if node else "deleted"

    def _release_overlay_quietly(self, overlay_path: str):
        try:
            self.overlay_store.release(overlay_path)
        except StorageError as e:
            logger.warning("Rollback Warning: failed to release overlay %s: %s", overlay_path, e)

    def _to_dict(self, node: models.Node) -> Dict[str, Any]:
        console = None
        if node.status == NodeStatus.RUNNING.value and node.guacamole_connection_id:
            console = self.gateway.console_info(node.guacamole_connection_id)
        return {
            "id": node.id,
            "name": node.name,
            "status": node.status,
            "image_id": node.image_id,
            "instance_overlay_path": node.instance_overlay_path,
            "vnc_port": node.vnc_port,
            "guacamole_connection_id": node.guacamole_connection_id,
            "console": console,
            "created_at": node.created_at.isoformat() if node.created_at else None,
        }
