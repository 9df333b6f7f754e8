import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional


class ProcessState(str, enum.Enum):
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


@dataclass
class ProcessHandle:
    """
    하이퍼바이저 인스턴스 하나를 가리키는 핸들.

    도메인 UUID는 노드 ID와 같으므로, 프로세스를 시작한 관리자가 재시작되어도
    노드 레코드만으로 핸들을 다시 만들 수 있습니다.
    """
    domain_uuid: str
    domain_name: str
    vnc_port: Optional[int] = None
    state: ProcessState = ProcessState.STARTING


class IVmSupervisor(ABC):
    @abstractmethod
    def handle_for(self, node_id: str, vnc_port: Optional[int] = None) -> ProcessHandle:
        """노드 ID로부터 해당 노드의 하이퍼바이저 인스턴스 핸들을 만듭니다."""
        pass

    @abstractmethod
    def start(self, node_id: str, overlay_path: str, port: int) -> ProcessHandle:
        """오버레이를 디스크로, port를 VNC 콘솔로 사용하는 인스턴스를 시작합니다."""
        pass

    @abstractmethod
    def stop(self, handle: ProcessHandle) -> bool:
        """인스턴스를 정상 종료하고, 제한 시간 안에 멈추지 않으면 강제 종료합니다."""
        pass

    @abstractmethod
    def is_alive(self, handle: ProcessHandle) -> bool:
        """
        인스턴스가 살아있는지 확인합니다. 인스턴스가 없다는 것이 확인될 때만 False입니다.

        Raises:
            ConnectionError: 하이퍼바이저에 확인할 수 없을 때.
        """
        pass

    @abstractmethod
    def list_managed_domains(self) -> Dict[str, str]:
        """이 관리자가 만든 실행 중인 도메인의 {UUID: 이름} 목록을 반환합니다."""
        pass
