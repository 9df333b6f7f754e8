import enum

from sqlalchemy import (
    CheckConstraint, Column, DateTime, ForeignKey, Integer, String, func
)
from sqlalchemy.orm import relationship
from ..database import Base


class NodeStatus(str, enum.Enum):
    """
    노드 상태. Stopped와 Running이 안정 상태이며,
    나머지는 한 노드에 대한 작업을 직렬화하기 위해 작업 도중에만 기록되는 점유 상태입니다.
    """
    STOPPED = "Stopped"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPING = "Stopping"
    WIPING = "Wiping"


class Node(Base):
    """
    랩에서 관리하는 가상 머신 인스턴스를 나타냅니다.
    각 노드는 하나의 이미지에서 만들어지며, 자신만의 인스턴스 오버레이 파일을 가집니다.
    실행 중(Running)일 때만 VNC 포트와 Guacamole 연결 ID를 가집니다.
    """
    __tablename__ = "nodes"
    __table_args__ = (
        CheckConstraint(
            "status IN ('Stopped', 'Starting', 'Running', 'Stopping', 'Wiping')",
            name="ck_nodes_status",
        ),
        CheckConstraint(
            "status != 'Running' OR (vnc_port IS NOT NULL AND guacamole_connection_id IS NOT NULL)",
            name="ck_nodes_running_console",
        ),
        CheckConstraint(
            "status NOT IN ('Stopped', 'Starting', 'Wiping') "
            "OR (vnc_port IS NULL AND guacamole_connection_id IS NULL)",
            name="ck_nodes_idle_console",
        ),
    )

    id = Column(String(36), primary_key=True)
    name = Column(String, unique=True, nullable=False, index=True)
    status = Column(String, nullable=False, default=NodeStatus.STOPPED.value)
    image_id = Column(String(36), ForeignKey("images.id", ondelete="RESTRICT"), nullable=False, index=True)
    # OVERLAY_DIR 기준 상대 경로
    instance_overlay_path = Column(String, unique=True, nullable=False)
    vnc_port = Column(Integer, unique=True, nullable=True)
    guacamole_connection_id = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    image = relationship("Image")
