# tests/services/test_image_service.py
import pytest
from unittest.mock import MagicMock
from sqlalchemy.exc import IntegrityError

from nodelab.database import models
from nodelab.repositories.interfaces import IImageRepository, INodeRepository
from nodelab.services.exceptions import (
    ImageAlreadyExistsError,
    ImageInUseError,
    ImageNotFoundError,
    InvalidPathError,
)
from nodelab.services.image_service import ImageService

# ===================================================================
#  Fixture 설정
# ===================================================================

BASE = models.Image(id="img-base", name="ubuntu-base", path="ubuntu-base.qcow2", parent_id=None)
FRR = models.Image(id="img-frr", name="ubuntu-frr", path="ubuntu-frr.qcow2", parent_id="img-base")
LAB = models.Image(id="img-lab", name="ubuntu-frr-lab", path="lab/ubuntu-frr-lab.qcow2", parent_id="img-frr")
CATALOG = {image.id: image for image in (BASE, FRR, LAB)}

@pytest.fixture
def mock_image_repo() -> MagicMock:
    """IImageRepository에 대한 모의(Mock) 객체. 세 단계 이미지 체인을 가진 카탈로그를 흉내 냅니다."""
    repo = MagicMock(spec=IImageRepository)
    repo.find_by_id.side_effect = CATALOG.get
    repo.find_by_name.return_value = None
    repo.create.side_effect = lambda image: image
    repo.count_children.return_value = 0
    return repo

@pytest.fixture
def mock_node_repo() -> MagicMock:
    repo = MagicMock(spec=INodeRepository)
    repo.count_by_image_id.return_value = 0
    return repo

@pytest.fixture
def image_service(mock_image_repo, mock_node_repo, tmp_path) -> ImageService:
    return ImageService(mock_image_repo, mock_node_repo, image_dir=str(tmp_path))

# ===================================================================
#  create_image 테스트 스위트
# ===================================================================
class TestCreateImage:
    def test_create_base_image(self, image_service, mock_image_repo):
        """부모 없이 베이스 이미지를 등록하면 새 ID가 발급되는지 테스트합니다."""
        image = image_service.create_image("debian-base", "debian.qcow2", description="Debian 12")

        assert image.id
        assert image.parent_id is None
        assert image.is_base_image()
        mock_image_repo.create.assert_called_once_with(image)

    def test_create_overlay_image_with_parent(self, image_service):
        image = image_service.create_image("frr-bgp", "frr-bgp.qcow2", parent_id="img-frr")

        assert image.parent_id == "img-frr"
        assert not image.is_base_image()

    def test_create_overlay_image_derives_path_from_name(self, image_service):
        image = image_service.create_overlay_image("img-base", "My Router Image")

        assert image.path == "my-router-image.qcow2"
        assert image.parent_id == "img-base"

    def test_create_image_with_missing_parent(self, image_service, mock_image_repo):
        """존재하지 않는 부모를 지정하면 ImageNotFoundError가 발생하고 저장하지 않는지 테스트합니다."""
        with pytest.raises(ImageNotFoundError):
            image_service.create_image("orphan", "orphan.qcow2", parent_id="img-missing")

        mock_image_repo.create.assert_not_called()

    def test_create_image_with_duplicate_name(self, image_service, mock_image_repo):
        mock_image_repo.find_by_name.return_value = BASE

        with pytest.raises(ImageAlreadyExistsError):
            image_service.create_image("ubuntu-base", "other.qcow2")

    def test_create_image_maps_integrity_error_to_conflict(self, image_service, mock_image_repo):
        mock_image_repo.create.side_effect = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(ImageAlreadyExistsError):
            image_service.create_image("racing-name", "racing.qcow2")

    @pytest.mark.parametrize("path", ["../etc/shadow", "/etc/shadow", ""])
    def test_create_image_rejects_paths_outside_image_dir(self, image_service, mock_image_repo, path):
        """IMAGE_DIR 밖을 가리키는 경로는 InvalidPathError로 거부되는지 테스트합니다."""
        with pytest.raises(InvalidPathError):
            image_service.create_image("evil", path)

        mock_image_repo.create.assert_not_called()

    def test_create_image_rejects_empty_name(self, image_service):
        with pytest.raises(ValueError):
            image_service.create_image("", "x.qcow2")

# ===================================================================
#  delete 테스트 스위트
# ===================================================================
class TestDeleteImage:
    def test_delete_unused_image(self, image_service, mock_image_repo):
        assert image_service.delete("img-lab") is True
        mock_image_repo.delete.assert_called_once_with(LAB)

    def test_delete_image_with_children_is_conflict(self, image_service, mock_image_repo):
        """자식 이미지가 있는 이미지는 삭제할 수 없는지 테스트합니다."""
        mock_image_repo.count_children.return_value = 1

        with pytest.raises(ImageInUseError):
            image_service.delete("img-base")

        mock_image_repo.delete.assert_not_called()

    def test_delete_image_used_by_nodes_is_conflict(self, image_service, mock_image_repo, mock_node_repo):
        """노드가 사용 중인 이미지는 삭제할 수 없는지 테스트합니다."""
        mock_node_repo.count_by_image_id.return_value = 3

        with pytest.raises(ImageInUseError):
            image_service.delete("img-lab")

        mock_image_repo.delete.assert_not_called()

    def test_delete_maps_late_reference_to_conflict(self, image_service, mock_image_repo):
        mock_image_repo.delete.side_effect = IntegrityError("DELETE", {}, Exception("FOREIGN KEY constraint failed"))

        with pytest.raises(ImageInUseError):
            image_service.delete("img-lab")

    def test_delete_missing_image(self, image_service):
        with pytest.raises(ImageNotFoundError):
            image_service.delete("img-missing")

# ===================================================================
#  조회 테스트 스위트
# ===================================================================
class TestImageLineage:
    def test_get_image_chain_is_ordered_from_base(self, image_service):
        chain = image_service.get_image_chain("img-lab")

        assert [image.id for image in chain] == ["img-base", "img-frr", "img-lab"]

    def test_describe_lists_ancestors_towards_base(self, image_service):
        result = image_service.describe("img-lab")

        assert result["image"]["id"] == "img-lab"
        assert [a["id"] for a in result["ancestors"]] == ["img-frr", "img-base"]

    def test_get_full_path_is_inside_image_dir(self, image_service, tmp_path):
        full_path = image_service.get_full_path(LAB)

        assert full_path == str(tmp_path.resolve() / "lab" / "ubuntu-frr-lab.qcow2")

    def test_list_images(self, image_service, mock_image_repo):
        mock_image_repo.list_all.return_value = [BASE, FRR]

        names = [image["name"] for image in image_service.list_images()]

        assert names == ["ubuntu-base", "ubuntu-frr"]
