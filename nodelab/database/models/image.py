from sqlalchemy import Column, String, Text, DateTime, ForeignKey, func
from sqlalchemy.orm import relationship
from ..database import Base


class Image(Base):
    """
    노드를 생성할 때 사용하는 디스크 이미지를 정의합니다.
    (예: 'ubuntu-base', 'ubuntu-with-frr').

    이미지는 부모(backing) 이미지를 가리키는 트리(forest) 구조를 이룹니다.
    parent_id가 없으면 베이스 이미지이고, 있으면 부모 위에 쌓인 오버레이 이미지입니다.
    parent_id는 생성 이후 변경되지 않으므로 순환이 생길 수 없습니다.
    """
    __tablename__ = "images"
    id = Column(String(36), primary_key=True)
    name = Column(String, unique=True, nullable=False, index=True)
    # IMAGE_DIR 기준 상대 경로
    path = Column(String, nullable=False)
    parent_id = Column(String(36), ForeignKey("images.id", ondelete="RESTRICT"), nullable=True, index=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    parent = relationship("Image", remote_side=[id])

    def is_base_image(self) -> bool:
        return self.parent_id is None
