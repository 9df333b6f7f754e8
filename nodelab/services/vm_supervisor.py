import logging
import threading
import time
from typing import Dict, Optional

import libvirt

from nodelab.config import settings
from nodelab.services.exceptions import VmLaunchError
from nodelab.services.supervisor_base import IVmSupervisor, ProcessHandle, ProcessState
from nodelab.utils.vm_xml_generator import generate_vm_xml

logger = logging.getLogger(__name__)


class LibvirtSupervisor(IVmSupervisor):
    """
    libvirt를 통해 노드별 임시(transient) QEMU 도메인을 시작/종료합니다.

    임시 도메인은 종료되는 순간 libvirt에서 사라지므로, 따로 undefine할 정의가 남지 않습니다.
    """

    def __init__(self, uri: Optional[str] = None, start_grace_seconds: Optional[float] = None,
                 stop_timeout_seconds: Optional[float] = None, poll_seconds: Optional[float] = None):
        self.uri = uri or settings.libvirt_uri
        self.start_grace_seconds = settings.start_grace_seconds if start_grace_seconds is None else start_grace_seconds
        self.stop_timeout_seconds = settings.stop_timeout_seconds if stop_timeout_seconds is None else stop_timeout_seconds
        self.poll_seconds = settings.stop_poll_seconds if poll_seconds is None else poll_seconds
        self.domain_prefix = settings.domain_prefix
        self._conn_lock = threading.Lock()
        try:
            self.conn = libvirt.open(self.uri)
        except libvirt.libvirtError as e:
            logger.error("Failed to open libvirt connection %s: %s", self.uri, e)
            raise ConnectionError("Failed to open connection to the hypervisor.") from e

    def domain_name_for(self, node_id: str) -> str:
        return f"{self.domain_prefix}-{node_id}"

    def handle_for(self, node_id: str, vnc_port: Optional[int] = None) -> ProcessHandle:
        return ProcessHandle(
            domain_uuid=node_id,
            domain_name=self.domain_name_for(node_id),
            vnc_port=vnc_port,
            state=ProcessState.RUNNING,
        )

    def start(self, node_id: str, overlay_path: str, port: int) -> ProcessHandle:
        """
        노드의 하이퍼바이저 인스턴스를 시작합니다.

        도메인 생성 직후 짧은 유예 시간 동안 기다린 뒤에도 살아있어야 시작에 성공한 것으로 봅니다.

        Args:
            node_id: 노드 ID. 도메인 UUID로 사용됩니다.
            overlay_path: 디스크로 사용할 인스턴스 오버레이의 절대 경로.
            port: VNC 콘솔을 노출할 포트.

        Returns:
            RUNNING 상태의 ProcessHandle.

        Raises:
            VmLaunchError: 도메인을 만들지 못했거나, 유예 시간 안에 종료되었을 때.
        """
        handle = ProcessHandle(domain_uuid=node_id, domain_name=self.domain_name_for(node_id), vnc_port=port)
        xml_config = generate_vm_xml(
            handle.domain_name,
            node_id,
            settings.vm_cpu_count,
            settings.vm_ram_mb,
            overlay_path,
            port,
            vnc_listen=settings.vnc_listen,
            enable_kvm=settings.enable_kvm,
        )

        try:
            self._ensure_connection()
            domain = self.conn.createXML(xml_config, 0)
        except (libvirt.libvirtError, ConnectionError) as e:
            handle.state = ProcessState.FAILED
            raise VmLaunchError(f"Failed to launch domain '{handle.domain_name}': {e}") from e

        time.sleep(self.start_grace_seconds)

        try:
            alive = domain.isActive() == 1
        except libvirt.libvirtError:
            alive = False

        if not alive:
            handle.state = ProcessState.FAILED
            self._destroy_quietly(handle)
            raise VmLaunchError(f"Domain '{handle.domain_name}' exited during the start grace period.")

        handle.state = ProcessState.RUNNING
        logger.info("Domain %s started (VNC port %d)", handle.domain_name, port)
        return handle

    def stop(self, handle: ProcessHandle) -> bool:
        """
        인스턴스를 종료합니다.

        ACPI 종료 요청을 보낸 뒤 stop_timeout_seconds 동안 상태를 확인하고,
        그래도 살아있으면 destroy로 강제 종료합니다. 도메인이 이미 없으면 종료된 것으로 봅니다.

        Returns:
            인스턴스가 종료된 것이 확인되면 True.

        Raises:
            ConnectionError: 하이퍼바이저에 도메인 상태를 물어볼 수 없을 때.
        """
        if handle.state in (ProcessState.STOPPED, ProcessState.FAILED):
            return True
        handle.state = ProcessState.STOPPING

        domain = self._lookup(handle)
        if domain is None:
            handle.state = ProcessState.STOPPED
            return True

        try:
            domain.shutdown()
        except libvirt.libvirtError as e:
            logger.warning("Graceful shutdown request for %s failed: %s", handle.domain_name, e)

        deadline = time.monotonic() + self.stop_timeout_seconds
        while time.monotonic() < deadline:
            if not self.is_alive(handle):
                handle.state = ProcessState.STOPPED
                logger.info("Domain %s shut down gracefully", handle.domain_name)
                return True
            time.sleep(self.poll_seconds)

        logger.warning("Domain %s did not shut down within %.1fs, destroying", handle.domain_name, self.stop_timeout_seconds)
        self._destroy_quietly(handle)
        if self.is_alive(handle):
            logger.error("Domain %s is still alive after destroy", handle.domain_name)
            return False
        handle.state = ProcessState.STOPPED
        return True

    def is_alive(self, handle: ProcessHandle) -> bool:
        """
        도메인이 실행 중인지 확인합니다.

        도메인이 없다는 응답(VIR_ERR_NO_DOMAIN)만 종료로 봅니다.

        Raises:
            ConnectionError: 하이퍼바이저에 물어볼 수 없어 상태를 알 수 없을 때.
        """
        domain = self._lookup(handle)
        if domain is None:
            return False
        try:
            return domain.isActive() == 1
        except libvirt.libvirtError as e:
            if self._is_no_domain(e):
                return False
            raise ConnectionError(f"Cannot query state of domain '{handle.domain_name}': {e}") from e

    def list_managed_domains(self) -> Dict[str, str]:
        self._ensure_connection()
        try:
            domains = self.conn.listAllDomains(libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE)
        except libvirt.libvirtError as e:
            raise ConnectionError(f"Error fetching domains from libvirt: {e}") from e
        prefix = f"{self.domain_prefix}-"
        return {d.UUIDString(): d.name() for d in domains if d.name().startswith(prefix)}

    @staticmethod
    def _is_no_domain(error: libvirt.libvirtError) -> bool:
        return error.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN

    def _ensure_connection(self):
        """공유 연결이 끊겼으면 다시 엽니다. (libvirtd 재시작 등)"""
        with self._conn_lock:
            try:
                if self.conn.isAlive():
                    return
            except libvirt.libvirtError as e:
                logger.debug("Liveness check of %s failed: %s", self.uri, e)
            logger.warning("Connection to %s is not alive, reconnecting", self.uri)
            try:
                self.conn = libvirt.open(self.uri)
            except libvirt.libvirtError as e:
                raise ConnectionError(f"Failed to reconnect to the hypervisor at {self.uri}.") from e

    def _lookup(self, handle: ProcessHandle):
        """도메인 객체를 찾습니다. 도메인이 없으면 None, 그 외의 libvirt 오류는 ConnectionError."""
        self._ensure_connection()
        try:
            return self.conn.lookupByUUIDString(handle.domain_uuid)
        except libvirt.libvirtError as e:
            if self._is_no_domain(e):
                return None
            raise ConnectionError(f"Failed to look up domain '{handle.domain_name}': {e}") from e

    def _destroy_quietly(self, handle: ProcessHandle):
        try:
            domain = self._lookup(handle)
            if domain is None:
                return
            if domain.isActive():
                domain.destroy()
        except libvirt.libvirtError as e:
            # destroy 도중 스스로 종료된 경우
            if self._is_no_domain(e):
                logger.debug("Domain %s vanished during destroy: %s", handle.domain_name, e)
            else:
                logger.error("Failed to destroy domain %s: %s", handle.domain_name, e)
        except ConnectionError as e:
            logger.error("Failed to destroy domain %s: %s", handle.domain_name, e)

    def __del__(self):
        if getattr(self, "conn", None):
            try:
                self.conn.close()
            except libvirt.libvirtError:
                pass # 이미 닫혔거나 할 수 없는 경우 무시
