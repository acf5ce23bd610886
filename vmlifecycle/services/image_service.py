import logging
import os
import subprocess
from typing import Optional

from vmlifecycle.config import settings
from vmlifecycle.repositories.interfaces import IImageRepository
from vmlifecycle.services.exceptions import DiskOperationError, ImageNotFoundError

logger = logging.getLogger(__name__)


class ImageService:
    def __init__(self, image_repo: IImageRepository, image_base_dir: Optional[str] = None):
        """
        ImageService를 초기화합니다.

        Args:
            image_repo: 이미지 데이터에 접근하기 위한 리포지토리 객체.
            image_base_dir: VM 디스크의 기본 저장 경로. 생략하면 설정값(IMAGE_BASE_DIR)을 사용합니다.
        """
        self.image_repo = image_repo
        self.image_base_dir = image_base_dir or settings.IMAGE_BASE_DIR

    def validate_image_and_get_path(self, operating_system: str) -> str:
        """
        운영체제 id에 해당하는 기반 이미지를 찾아, 존재하면 파일 경로를 반환합니다.

        Args:
            operating_system: 운영체제 id (예: 'ubuntu-22'). 이미지 이름과 같습니다.

        Returns:
            이미지의 실제 파일 시스템 경로.

        Raises:
            ImageNotFoundError: DB에 이미지가 없거나, 기록은 있으나 실제 파일이 없을 때.
        """
        image = self.image_repo.find_by_name(operating_system)
        if not image:
            raise ImageNotFoundError(f"Image '{operating_system}' not found in database.")

        if not os.path.exists(image.filepath):
            # DB에는 있지만 실제 파일이 없는 경우
            raise ImageNotFoundError(f"Source image file not found on disk: {image.filepath}")

        return image.filepath

    def create_vm_disk(
        self,
        vm_name: str,
        source_filepath: str,
        size_gb: Optional[int] = None,
        target_dir: Optional[str] = None,
    ) -> str:
        """
        CoW(Copy-on-Write) 방식으로 새 VM 디스크를 생성합니다.

        qemu-img 유틸리티를 사용하여 원본 이미지를 backing file으로 하는
        새로운 qcow2 디스크 이미지를 생성합니다.

        Args:
            vm_name: 생성할 VM의 이름. 새 디스크 파일명에 사용됩니다.
            source_filepath: 원본이 될 backing file의 경로.
            size_gb: 디스크의 가상 크기 (GB). 생략하면 원본 이미지 크기를 따릅니다.
            target_dir: 디스크를 만들 디렉터리. 생략하면 image_base_dir을 사용합니다.

        Returns:
            새로 생성된 VM 디스크의 전체 경로.

        Raises:
            DiskOperationError: 디스크 생성에 실패했을 때.
        """
        target_filepath = os.path.join(target_dir or self.image_base_dir, f"{vm_name}.qcow2")

        command = [
            'sudo', 'qemu-img', 'create',
            '-f', 'qcow2',
            '-F', 'qcow2',
            '-b', source_filepath,
            target_filepath
        ]
        if size_gb:
            command.append(f"{size_gb}G")

        try:
            subprocess.run(command, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            raise DiskOperationError(f"Failed to create CoW disk for {vm_name}: {e.stderr}") from e
        except FileNotFoundError as e:
            raise DiskOperationError("qemu-img command not found. Install qemu-utils.") from e

        logger.info("Created disk %s (backing file: %s)", target_filepath, source_filepath)
        return target_filepath

    def delete_vm_disk(self, disk_filepath: str) -> bool:
        """
        VM 디스크 파일을 삭제합니다. VM 제거와 생성 실패 시 롤백에 사용됩니다.

        Returns:
            성공적으로 삭제되었거나 파일이 원래 없었으면 True를 반환합니다.

        Raises:
            DiskOperationError: 디스크 파일 삭제에 실패했을 때.
        """
        if not os.path.exists(disk_filepath):
            logger.info("Disk file not found, skipping delete: %s", disk_filepath)
            return True
        try:
            subprocess.run(['sudo', 'rm', '-f', disk_filepath], check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            raise DiskOperationError(f"Failed to delete disk file '{disk_filepath}': {e.stderr}") from e
        logger.info("Disk file deleted: %s", disk_filepath)
        return True
