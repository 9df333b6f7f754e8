import logging
import threading
from typing import List, Optional

from nodelab.config import settings
from nodelab.services.exceptions import PortPoolExhaustedError

logger = logging.getLogger(__name__)


class PortAllocator:
    """
    고정 범위의 VNC 포트를 나눠주는 할당기.

    범위 크기만큼의 예약 플래그 배열을 두고, 짧은 임계 구역 안에서만 검사와 예약을 함께 수행합니다.
    항상 가장 낮은 빈 포트를 먼저 돌려줍니다.
    """

    def __init__(self, port_min: Optional[int] = None, port_max: Optional[int] = None):
        self.port_min = settings.vnc_port_min if port_min is None else port_min
        self.port_max = settings.vnc_port_max if port_max is None else port_max
        if self.port_max < self.port_min:
            raise ValueError(f"Invalid port range {self.port_min}-{self.port_max}")
        self._reserved = [False] * (self.port_max - self.port_min + 1)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return len(self._reserved)

    def in_range(self, port: int) -> bool:
        return self.port_min <= port <= self.port_max

    def acquire(self) -> int:
        """
        사용 중이지 않은 가장 낮은 포트를 예약하고 반환합니다.

        Raises:
            PortPoolExhaustedError: 범위 내 모든 포트가 예약되어 있을 때.
        """
        with self._lock:
            for index, reserved in enumerate(self._reserved):
                if not reserved:
                    self._reserved[index] = True
                    port = self.port_min + index
                    logger.debug("Acquired VNC port %d", port)
                    return port
        raise PortPoolExhaustedError(
            f"No free VNC ports in range {self.port_min}-{self.port_max}."
        )

    def reserve(self, port: int) -> bool:
        """
        특정 포트를 예약 상태로 표시합니다. 재시작 시 실행 중인 노드의 포트를 복원할 때 사용합니다.

        Returns:
            새로 예약했으면 True, 이미 예약되어 있었으면 False.
        """
        if not self.in_range(port):
            raise ValueError(f"Port {port} is outside range {self.port_min}-{self.port_max}")
        with self._lock:
            index = port - self.port_min
            if self._reserved[index]:
                return False
            self._reserved[index] = True
            return True

    def release(self, port: Optional[int]):
        """포트를 반환합니다. 이미 비어있는 포트나 None은 무시합니다."""
        if port is None:
            return
        if not self.in_range(port):
            logger.warning("Ignoring release of out-of-range port %s", port)
            return
        with self._lock:
            self._reserved[port - self.port_min] = False
        logger.debug("Released VNC port %d", port)

    def is_reserved(self, port: int) -> bool:
        if not self.in_range(port):
            return False
        with self._lock:
            return self._reserved[port - self.port_min]

    def reserved_ports(self) -> List[int]:
        with self._lock:
            return [self.port_min + i for i, reserved in enumerate(self._reserved) if reserved]
