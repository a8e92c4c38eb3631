import os
import re
from typing import AbstractSet

from config.settings import (
    VM_MAX_DISK_GIB,
    VM_MAX_MEMORY_MIB,
    VM_MAX_VCPU,
    VM_MIN_MEMORY_MIB,
    VM_MIN_VCPU,
)
from core.errors import ValidationError
from schemas.vm_schema import ProvisionRequest

# libvirt accepts more, but names double as image file names
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")


class RequestValidator:
    """
    Checks a ProvisionRequest before anything touches the hypervisor.

    Raises ValidationError naming the offending field (API spelling) on the
    first problem found.
    """

    def __init__(
        self,
        min_memory_mib: int = VM_MIN_MEMORY_MIB,
        max_memory_mib: int = VM_MAX_MEMORY_MIB,
        min_vcpu: int = VM_MIN_VCPU,
        max_vcpu: int = VM_MAX_VCPU,
        max_disk_gib: int = VM_MAX_DISK_GIB,
    ) -> None:
        self.min_memory_mib = min_memory_mib
        self.max_memory_mib = max_memory_mib
        self.min_vcpu = min_vcpu
        self.max_vcpu = max_vcpu
        self.max_disk_gib = max_disk_gib

    def validate(self, request: ProvisionRequest, existing_names: AbstractSet[str]) -> None:
        self._check_name(request.name, existing_names)
        self._check_range(
            "memoryMiB", request.memory_mib, self.min_memory_mib, self.max_memory_mib
        )
        self._check_range("vcpuCount", request.vcpu_count, self.min_vcpu, self.max_vcpu)
        self._check_range("diskSizeGiB", request.disk_size_gib, 1, self.max_disk_gib)
        if request.image_source_path is not None:
            self._check_source(request.image_source_path)

    @staticmethod
    def _check_name(name: str, existing_names: AbstractSet[str]) -> None:
        if not NAME_PATTERN.match(name):
            raise ValidationError(
                "name",
                "must start with a letter or digit and contain only letters, "
                "digits, '.', '_' or '-' (max 64 characters)",
            )
        if name in existing_names:
            raise ValidationError("name", f"a domain named '{name}' already exists")

    @staticmethod
    def _check_range(field: str, value: int, minimum: int, maximum: int) -> None:
        if value < minimum or value > maximum:
            raise ValidationError(field, f"must be between {minimum} and {maximum}, got {value}")

    @staticmethod
    def _check_source(path: str) -> None:
        if not path:
            raise ValidationError("imageSourcePath", "must not be empty")
        if not os.path.exists(path):
            raise ValidationError("imageSourcePath", f"'{path}' does not exist")
        if not os.path.isfile(path):
            raise ValidationError("imageSourcePath", f"'{path}' is not a regular file")
        if not os.access(path, os.R_OK):
            raise ValidationError("imageSourcePath", f"'{path}' is not readable")
