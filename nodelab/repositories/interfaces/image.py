from abc import ABC, abstractmethod
from typing import List, Optional
from nodelab.database import models


class IImageRepository(ABC):
    @abstractmethod
    def create(self, image_model: models.Image) -> models.Image:
        """새로운 이미지를 카탈로그에 등록합니다."""
        pass

    @abstractmethod
    def find_by_id(self, image_id: str) -> Optional[models.Image]:
        """고유 ID로 특정 이미지를 조회합니다."""
        pass

    @abstractmethod
    def find_by_name(self, name: str) -> Optional[models.Image]:
        """이름으로 특정 이미지를 조회합니다."""
        pass

    @abstractmethod
    def list_all(self) -> List[models.Image]:
        """카탈로그의 모든 이미지를 조회합니다."""
        pass

    @abstractmethod
    def count_children(self, image_id: str) -> int:
        """해당 이미지를 부모로 삼는 이미지의 개수를 조회합니다."""
        pass

    @abstractmethod
    def delete(self, image: models.Image) -> bool:
        """특정 이미지를 카탈로그에서 삭제합니다."""
        pass
