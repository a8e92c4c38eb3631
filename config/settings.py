import os
from pathlib import Path

# -----------------------------
# Base paths
# -----------------------------
BASE_DIR = Path(__file__).resolve().parent.parent  # project root

# Everything the service writes lives under DATA_DIR
DATA_DIR = Path(os.getenv("VM_MANAGER_DATA_DIR", str(BASE_DIR)))

# -----------------------------
# VM image storage
# -----------------------------
VM_IMAGES_ROOT = DATA_DIR / "vm-images"
VM_IMAGES_ROOT.mkdir(parents=True, exist_ok=True)

# per-VM disks, one <name>.qcow2 per record
VM_STORAGE_PATH = VM_IMAGES_ROOT / "instances"
VM_STORAGE_PATH.mkdir(parents=True, exist_ok=True)

IMAGE_FORMAT = "qcow2"
IMAGE_COMMAND_TIMEOUT = int(os.getenv("IMAGE_COMMAND_TIMEOUT", "120"))
IMAGE_VERIFY_CHECKSUM = os.getenv("IMAGE_VERIFY_CHECKSUM", "true").lower() == "true"

# -----------------------------
# Inventory
# -----------------------------
INVENTORY_DB_PATH = os.getenv(
    "INVENTORY_DB_PATH",
    str(DATA_DIR / "inventory.db"),
)

# -----------------------------
# Logging
# -----------------------------
LOG_DIR = DATA_DIR / "log"
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOG_DIR / "vm-provisioner.log"

# -----------------------------
# Request bounds
# -----------------------------
VM_MIN_MEMORY_MIB = int(os.getenv("VM_MIN_MEMORY_MIB", "256"))
VM_MAX_MEMORY_MIB = int(os.getenv("VM_MAX_MEMORY_MIB", "65536"))
VM_MIN_VCPU = int(os.getenv("VM_MIN_VCPU", "1"))
VM_MAX_VCPU = int(os.getenv("VM_MAX_VCPU", "32"))
VM_MAX_DISK_GIB = int(os.getenv("VM_MAX_DISK_GIB", "2048"))

# -----------------------------
# Hypervisor / libvirt
# -----------------------------
HYPERVISOR_TYPE = os.getenv("HYPERVISOR_TYPE", "kvm").lower()

# common examples:
#   qemu:///system                  (KVM/QEMU on host)
#   qemu:///session                 (unprivileged QEMU)
#   qemu+ssh://root@host/system     (remote KVM)
LIBVIRT_URI = os.getenv("LIBVIRT_URI", "qemu:///system")

# network wiring per ProvisionRequest.networkMode
VM_BRIDGE_NAME = os.getenv("VM_BRIDGE_NAME", "br0")
VM_NAT_NETWORK = os.getenv("VM_NAT_NETWORK", "default")
VM_ISOLATED_NETWORK = os.getenv("VM_ISOLATED_NETWORK", "isolated")

# seconds to wait for an ACPI shutdown before forcing destroy()
VM_STOP_TIMEOUT = int(os.getenv("VM_STOP_TIMEOUT", "15"))

# -----------------------------
# Orchestration
# -----------------------------
PROVISION_MAX_RETRIES = int(os.getenv("PROVISION_MAX_RETRIES", "3"))
PROVISION_BACKOFF_BASE = float(os.getenv("PROVISION_BACKOFF_BASE", "1.0"))
PROVISION_BACKOFF_MAX = float(os.getenv("PROVISION_BACKOFF_MAX", "30.0"))
PROVISION_WORKERS = int(os.getenv("PROVISION_WORKERS", "4"))
CONTROL_PLANE_TIMEOUT = float(os.getenv("CONTROL_PLANE_TIMEOUT", "60"))

# -----------------------------
# Metrics / monitoring
# -----------------------------
METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"
METRICS_REFRESH_INTERVAL = int(os.getenv("METRICS_REFRESH_INTERVAL", "5"))

# -----------------------------
# API server
# -----------------------------
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))

# -----------------------------
# Misc
# -----------------------------
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
