import logging
import os
import subprocess
import uuid
from typing import Optional

from nodelab.config import settings
from nodelab.services.exceptions import OverlayCollisionError, StorageError
from nodelab.utils.paths import resolve_within

logger = logging.getLogger(__name__)


class OverlayStore:
    """노드별 인스턴스 오버레이(qcow2 CoW 디스크) 파일을 만들고 지웁니다."""

    def __init__(self, overlay_dir: Optional[str] = None, qemu_img_binary: Optional[str] = None, backing_format: Optional[str] = None):
        self.overlay_base_dir = overlay_dir or settings.overlay_dir
        self.qemu_img_binary = qemu_img_binary or settings.qemu_img_binary
        self.backing_format = backing_format or settings.backing_format

    def overlay_name_for(self, node_id: str) -> str:
        """노드 ID로부터 OVERLAY_DIR 기준 오버레이 파일 이름을 만듭니다. 노드마다 유일합니다."""
        return f"{node_id}.qcow2"

    def resolve(self, overlay_path: str) -> str:
        return resolve_within(self.overlay_base_dir, overlay_path)

    def exists(self, overlay_path: str) -> bool:
        return os.path.exists(self.resolve(overlay_path))

    def allocate(self, base_image_path: str, node_id: str) -> str:
        """
        CoW(Copy-on-Write) 방식으로 노드의 인스턴스 오버레이를 생성합니다.

        qemu-img로 base_image_path를 backing file으로 하는 qcow2 파일을 임시 이름으로 만든 뒤,
        대상 이름에 하드 링크를 거는 방식으로 원자적으로 공개합니다. 링크는 대상이 이미 있으면
        실패하므로 덮어쓰기가 일어나지 않습니다. 어느 단계에서 실패하든 임시 파일은 지워집니다.

        Args:
            base_image_path: backing file이 될 이미지의 절대 경로.
            node_id: 오버레이를 소유할 노드의 ID.

        Returns:
            OVERLAY_DIR 기준 오버레이 파일의 상대 경로.

        Raises:
            OverlayCollisionError: 대상 경로에 파일이 이미 존재할 때.
            StorageError: backing file이 없거나, qemu-img 실행 또는 파일 작업이 실패했을 때.
        """
        overlay_path = self.overlay_name_for(node_id)
        target_filepath = self.resolve(overlay_path)

        if os.path.exists(target_filepath):
            raise OverlayCollisionError(f"Overlay already exists at {target_filepath}")
        if not os.path.exists(base_image_path):
            raise StorageError(f"Backing image file not found on disk: {base_image_path}")

        try:
            os.makedirs(self.overlay_base_dir, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot prepare overlay directory '{self.overlay_base_dir}': {e}") from e

        temp_filepath = os.path.join(
            os.path.dirname(target_filepath),
            f".{overlay_path}.{uuid.uuid4().hex[:8]}.tmp",
        )
        command = [
            self.qemu_img_binary, 'create',
            '-f', 'qcow2',
            '-F', self.backing_format,
            '-b', base_image_path,
            temp_filepath
        ]

        try:
            subprocess.run(command, check=True, capture_output=True, text=True)
            os.link(temp_filepath, target_filepath)
        except subprocess.CalledProcessError as e:
            raise StorageError(f"Failed to create CoW overlay for node {node_id}: {e.stderr}") from e
        except FileNotFoundError as e:
            raise StorageError(f"{self.qemu_img_binary} command not found. Install qemu-utils.") from e
        except FileExistsError as e:
            raise OverlayCollisionError(f"Overlay already exists at {target_filepath}") from e
        except OSError as e:
            raise StorageError(f"Failed to publish overlay for node {node_id}: {e}") from e
        finally:
            self._discard(temp_filepath)

        logger.info("Allocated overlay %s (backing %s)", target_filepath, base_image_path)
        return overlay_path

    def release(self, overlay_path: str) -> bool:
        """
        오버레이 파일을 삭제합니다. 파일이 이미 없으면 로그만 남기고 성공으로 처리합니다.

        Returns:
            성공적으로 삭제되었거나 파일이 원래 없었으면 True.

        Raises:
            StorageError: 파일 삭제에 실패했을 때.
        """
        filepath = self.resolve(overlay_path)
        try:
            os.remove(filepath)
        except FileNotFoundError:
            logger.warning("Overlay file not found, skipping delete: %s", filepath)
            return True
        except OSError as e:
            raise StorageError(f"Failed to delete overlay file '{filepath}': {e}") from e

        logger.info("Overlay file deleted: %s", filepath)
        return True

    def _discard(self, filepath: str):
        try:
            os.remove(filepath)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove temporary overlay %s: %s", filepath, e)
