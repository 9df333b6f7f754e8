from abc import ABC, abstractmethod
from typing import Any, List, Optional
from nodelab.database import models


class INodeRepository(ABC):
    @abstractmethod
    def create(self, node_model: models.Node) -> models.Node:
        """
        새로운 노드 정보를 데이터베이스에 생성합니다.

        이름이나 오버레이 경로가 중복되면 세션을 롤백한 뒤 IntegrityError를 그대로 올립니다.
        """
        pass

    @abstractmethod
    def find_by_id(self, node_id: str) -> Optional[models.Node]:
        """고유 ID로 특정 노드를 조회합니다."""
        pass

    @abstractmethod
    def find_by_name(self, name: str) -> Optional[models.Node]:
        """이름으로 특정 노드를 조회합니다."""
        pass

    @abstractmethod
    def list_all(self) -> List[models.Node]:
        """모든 노드의 목록을 조회합니다."""
        pass

    @abstractmethod
    def list_by_status(self, *statuses: models.NodeStatus) -> List[models.Node]:
        """주어진 상태 중 하나에 있는 노드의 목록을 조회합니다."""
        pass

    @abstractmethod
    def count_by_image_id(self, image_id: str) -> int:
        """특정 이미지에서 만들어진 노드의 개수를 조회합니다."""
        pass

    @abstractmethod
    def transition(self, node_id: str, from_status: models.NodeStatus, to_status: models.NodeStatus, **fields: Any) -> bool:
        """
        노드 상태를 조건부로 전이합니다.

        현재 상태가 from_status인 경우에만 단일 UPDATE 문으로 to_status와 추가 필드를 기록합니다.
        같은 노드에 대한 동시 작업을 직렬화하는 유일한 수단입니다.

        Args:
            node_id: 전이할 노드의 ID.
            from_status: 기대하는 현재 상태.
            to_status: 새 상태.
            **fields: 함께 갱신할 컬럼 (예: vnc_port, guacamole_connection_id).

        Returns:
            전이에 성공하면 True, 현재 상태가 일치하지 않거나 노드가 없으면 False.
        """
        pass

    @abstractmethod
    def delete(self, node: models.Node) -> bool:
        """특정 노드 정보를 데이터베이스에서 삭제합니다."""
        pass
