import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from nodelab.config import settings
from nodelab.database import models
from nodelab.repositories.interfaces import IImageRepository, INodeRepository
from nodelab.services.exceptions import (
    ImageAlreadyExistsError,
    ImageInUseError,
    ImageNotFoundError,
)
from nodelab.utils.paths import resolve_within, sanitize_identifier

logger = logging.getLogger(__name__)


class ImageService:
    def __init__(self, image_repo: IImageRepository, node_repo: INodeRepository, image_dir: Optional[str] = None):
        """
        ImageService를 초기화합니다.

        Args:
            image_repo: 이미지 카탈로그에 접근하기 위한 리포지토리 객체.
            node_repo: 이미지 삭제 시 참조 중인 노드를 확인하기 위한 리포지토리 객체.
            image_dir: 이미지 파일이 위치한 디렉터리. 생략하면 설정값을 사용합니다.
        """
        self.image_repo = image_repo
        self.node_repo = node_repo
        self.image_base_dir = image_dir or settings.image_dir

    def resolve(self, image_id: str) -> models.Image:
        """
        ID로 이미지를 조회합니다.

        Raises:
            ImageNotFoundError: 카탈로그에 해당 ID의 이미지가 없을 때.
        """
        image = self.image_repo.find_by_id(image_id)
        if not image:
            raise ImageNotFoundError(f"Image '{image_id}' not found in catalog.")
        return image

    def list_images(self) -> List[Dict[str, Any]]:
        """카탈로그의 모든 이미지를 조회합니다."""
        return [self.to_dict(image) for image in self.image_repo.list_all()]

    def create_image(self, name: str, path: str, parent_id: Optional[str] = None, description: Optional[str] = None) -> models.Image:
        """
        미리 준비된 이미지 파일을 카탈로그에 등록합니다.

        parent_id가 주어지면 부모 이미지 위에 쌓인 오버레이 이미지로 등록됩니다.
        새 이미지는 항상 새 ID를 받고 부모는 이후 바뀌지 않으므로, 부모 존재 여부만 확인하면
        트리에 순환이나 두 번째 부모가 생기지 않습니다.

        Args:
            name: 카탈로그에서 유일한 이미지 이름.
            path: IMAGE_DIR 기준 상대 경로.
            parent_id: 부모(backing) 이미지 ID. 베이스 이미지라면 None.
            description: 이미지에 대한 설명.

        Returns:
            생성된 Image 모델.

        Raises:
            ValueError: 이름이 비어있을 때.
            InvalidPathError: 경로가 IMAGE_DIR 밖을 가리킬 때.
            ImageNotFoundError: parent_id에 해당하는 이미지가 없을 때.
            ImageAlreadyExistsError: 동일한 이름의 이미지가 이미 존재할 때.
        """
        if not name or not name.strip():
            raise ValueError("Image name must not be empty.")
        resolve_within(self.image_base_dir, path)

        if parent_id is not None:
            self.resolve(parent_id)
        if self.image_repo.find_by_name(name):
            raise ImageAlreadyExistsError(f"Image name '{name}' already exists.")

        new_image = models.Image(
            id=str(uuid.uuid4()),
            name=name,
            path=path,
            parent_id=parent_id,
            description=description,
        )
        try:
            created = self.image_repo.create(new_image)
        except IntegrityError as e:
            raise ImageAlreadyExistsError(f"Image name '{name}' already exists.") from e

        logger.info("Registered image '%s' (%s, parent=%s)", name, created.id, parent_id)
        return created

    def create_overlay_image(self, parent_id: str, name: str, description: Optional[str] = None, path: Optional[str] = None) -> models.Image:
        """
        부모 이미지 위에 쌓이는 카탈로그 수준의 오버레이 이미지를 등록합니다.

        파일은 외부에서 미리 준비된 것으로 간주하며 여기서 만들지 않습니다.
        path를 생략하면 이름에서 만든 '<name>.qcow2'를 사용합니다.
        """
        if parent_id is None:
            raise ValueError("Overlay images require a parent image.")
        if path is None:
            path = f"{sanitize_identifier(name) or 'image'}.qcow2"
        return self.create_image(name, path, parent_id=parent_id, description=description)

    def delete(self, image_id: str) -> bool:
        """
        카탈로그에서 이미지를 삭제합니다.

        이 이미지를 부모로 삼는 이미지나, 이 이미지에서 만들어진 노드가 있으면 삭제할 수 없습니다.
        오버레이의 오버레이를 통해 간접적으로 참조하는 노드는 자식 이미지 검사에서 걸러집니다.

        Raises:
            ImageNotFoundError: 이미지를 찾을 수 없을 때.
            ImageInUseError: 자식 이미지나 노드가 참조 중일 때.
        """
        image = self.resolve(image_id)

        children = self.image_repo.count_children(image_id)
        if children > 0:
            raise ImageInUseError(f"Image '{image.name}' is the parent of {children} image(s).")

        nodes = self.node_repo.count_by_image_id(image_id)
        if nodes > 0:
            raise ImageInUseError(f"Image '{image.name}' is used by {nodes} node(s).")

        try:
            self.image_repo.delete(image)
        except IntegrityError as e:
            # 검사 이후 생긴 참조는 외래 키 RESTRICT에서 걸림
            raise ImageInUseError(f"Image '{image.name}' is still referenced.") from e

        logger.info("Deleted image '%s' (%s)", image.name, image_id)
        return True

    def get_image_chain(self, image_id: str) -> List[models.Image]:
        """
        베이스 이미지부터 주어진 이미지까지의 조상 체인을 반환합니다.

        Returns:
            [베이스 이미지, ..., image_id에 해당하는 이미지] 순서의 리스트.
        """
        chain = []
        seen = set()
        current = self.resolve(image_id)
        while current is not None:
            if current.id in seen:
                raise ValueError(f"Image lineage of '{image_id}' contains a cycle.")
            seen.add(current.id)
            chain.append(current)
            current = self.resolve(current.parent_id) if current.parent_id else None
        chain.reverse()
        return chain

    def get_full_path(self, image: models.Image) -> str:
        """이미지 파일의 절대 경로를 반환합니다. (IMAGE_DIR 밖이면 InvalidPathError)"""
        return resolve_within(self.image_base_dir, image.path)

    def describe(self, image_id: str) -> Dict[str, Any]:
        """이미지 정보와 부모 쪽으로 거슬러 올라가는 조상 목록을 함께 반환합니다."""
        chain = self.get_image_chain(image_id)
        image, ancestors = chain[-1], list(reversed(chain[:-1]))
        return {
            "image": self.to_dict(image),
            "ancestors": [self.to_dict(a) for a in ancestors],
        }

    @staticmethod
    def to_dict(image: models.Image) -> Dict[str, Any]:
        return {
            "id": image.id,
            "name": image.name,
            "path": image.path,
            "parent_id": image.parent_id,
            "description": image.description,
            "created_at": image.created_at.isoformat() if image.created_at else None,
        }
