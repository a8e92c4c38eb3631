import hashlib
import json
import os
import subprocess
from pathlib import Path
from typing import Optional

from config.settings import (
    IMAGE_COMMAND_TIMEOUT,
    IMAGE_FORMAT,
    IMAGE_VERIFY_CHECKSUM,
    VM_STORAGE_PATH,
)
from core.errors import ImageError, ImageErrorKind
from core.logger import log_event
from schemas.vm_schema import DiskImage, ProvisionRequest

GIB = 1024 ** 3


class ImageProvisioner:
    """
    Prepares per-VM disks with qemu-img inside the instance storage dir.

    Images are named after the VM (`<name>.qcow2`). With an image source the
    disk is a qcow2 overlay backed by that source, otherwise a fresh sparse
    qcow2 of the requested size. Callers must hold the name's reservation,
    which is what keeps two orchestrations off the same path.
    """

    def __init__(
        self,
        storage_dir: Path = VM_STORAGE_PATH,
        command_timeout: int = IMAGE_COMMAND_TIMEOUT,
        verify_checksum: bool = IMAGE_VERIFY_CHECKSUM,
    ) -> None:
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.command_timeout = command_timeout
        self.verify_checksum = verify_checksum

    # ------------------------------------------------------------------
    # Utility methods
    # ------------------------------------------------------------------
    def image_path(self, name: str) -> Path:
        return self.storage_dir / f"{name}.{IMAGE_FORMAT}"

    def image_for(self, name: str, size_gib: int) -> DiskImage:
        return DiskImage(path=str(self.image_path(name)), size_gib=size_gib, format=IMAGE_FORMAT)

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        log_event(f"[image] Running: {' '.join(cmd)}")
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.command_timeout,
            )
        except FileNotFoundError as e:
            raise ImageError(ImageErrorKind.IO_FAILURE, f"qemu-img not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ImageError(
                ImageErrorKind.IO_FAILURE,
                f"'{cmd[1]}' timed out after {self.command_timeout}s",
            ) from e
        except subprocess.CalledProcessError as e:
            err = e.stderr.strip() if e.stderr else str(e)
            raise ImageError(ImageErrorKind.IO_FAILURE, f"qemu-img {cmd[1]} failed: {err}") from e

    def _inspect(self, path: Path) -> dict:
        result = self._run(["qemu-img", "info", "--output=json", "-U", str(path)])
        try:
            return json.loads(result.stdout)
        except ValueError as e:
            raise ImageError(
                ImageErrorKind.IO_FAILURE,
                f"Unreadable qemu-img info output for {path}: {e}",
            ) from e

    @staticmethod
    def _sha256(path: str) -> str:
        digest = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                digest.update(chunk)
        return digest.hexdigest()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    def prepare_image(
        self,
        request: ProvisionRequest,
        expected: Optional[DiskImage] = None,
    ) -> DiskImage:
        """
        Make sure the VM's disk exists and matches the request.

        An existing image with the expected size and backing file counts as
        success, which makes the call safe to retry. Anything else already at
        the path is an ImageError Conflict.
        """
        target = self.image_path(request.name)
        source = (
            str(Path(request.image_source_path).resolve())
            if request.image_source_path
            else None
        )

        checksum = None
        if source and self.verify_checksum:
            try:
                checksum = self._sha256(source)
            except OSError as e:
                raise ImageError(
                    ImageErrorKind.IO_FAILURE,
                    f"Failed to read image source {source}: {e}",
                ) from e

        image = DiskImage(
            path=str(target),
            size_gib=request.disk_size_gib,
            backing_source=source,
            checksum=checksum,
            format=IMAGE_FORMAT,
        )

        if target.exists():
            self._verify_existing(target, image, expected)
            log_event(f"[image] Reusing existing image {target} for VM '{request.name}'")
            return image

        if source:
            source_info = self._inspect(Path(source))
            source_format = source_info.get("format", "raw")
            log_event(f"[image] Creating overlay {target} backed by {source} ({source_format})")
            cmd = [
                "qemu-img", "create",
                "-f", IMAGE_FORMAT,
                "-F", source_format,
                "-b", source,
                str(target),
                f"{request.disk_size_gib}G",
            ]
        else:
            log_event(f"[image] Allocating {request.disk_size_gib}GiB image {target}")
            cmd = [
                "qemu-img", "create",
                "-f", IMAGE_FORMAT,
                str(target),
                f"{request.disk_size_gib}G",
            ]

        try:
            self._run(cmd)
        except ImageError:
            # never leave a half-written file behind for the next retry
            if target.exists():
                target.unlink()
            raise
        return image

    def _verify_existing(
        self,
        target: Path,
        image: DiskImage,
        expected: Optional[DiskImage],
    ) -> None:
        info = self._inspect(target)

        actual_size = info.get("virtual-size")
        if actual_size != image.size_gib * GIB:
            raise ImageError(
                ImageErrorKind.CONFLICT,
                f"Image {target} exists with size {actual_size} bytes, "
                f"expected {image.size_gib}GiB",
            )

        backing = info.get("full-backing-filename") or info.get("backing-filename")
        if backing != image.backing_source:
            raise ImageError(
                ImageErrorKind.CONFLICT,
                f"Image {target} exists with backing file {backing!r}, "
                f"expected {image.backing_source!r}",
            )

        if expected is not None and expected.checksum and image.checksum:
            if expected.checksum != image.checksum:
                raise ImageError(
                    ImageErrorKind.CONFLICT,
                    f"Backing source of {target} changed since the image was created",
                )

    def delete_image(self, image: DiskImage) -> None:
        path = Path(image.path)
        if self.storage_dir.resolve() not in path.resolve().parents:
            raise ImageError(
                ImageErrorKind.CONFLICT,
                f"Refusing to delete {path}: outside {self.storage_dir}",
            )
        try:
            os.remove(path)
            log_event(f"[image] Deleted image {path}")
        except FileNotFoundError:
            log_event(f"[image] Image {path} already absent")
        except OSError as e:
            raise ImageError(ImageErrorKind.IO_FAILURE, f"Failed to delete {path}: {e}") from e
