"""Core data types - plain dataclasses only"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import wgpu

# ============================================================================
# CONFIGURATION
# ============================================================================


@dataclass
class GPUConfig:
    """
    Centralized GPU configuration for kernel parameters and dispatch limits.

    This dataclass is immutable - do not modify fields after creation.
    All parameters can be tuned for different GPU architectures.
    """

    # ========================================================================
    # WORKGROUP SIZES
    # ========================================================================

    default_workgroup_size: int = 256
    """Workgroup size for 1-D elementwise kernels (square, add, sigmoid, ...)"""

    matmul_tile_size: int = 16
    """
    Tile edge for the 2-D kernels (dot_product, transpose)

    Optimal values:
    - Small GPUs (integrated): 8
    - Mid-range and high-end GPUs: 16

    Constraints:
    - Must be power of 2
    - tile_size * tile_size invocations must fit max_invocations_per_workgroup
    - Shared memory usage: tile_size * tile_size * 2 * 4 bytes
    """

    # ========================================================================
    # COMPUTE LIMITS
    # ========================================================================

    max_invocations_per_workgroup: int = 256
    """
    Maximum invocations per workgroup.

    256 is the WebGPU default limit and is what request_device_sync() grants
    unless higher limits are explicitly requested.
    """

    max_workgroups_per_dim: int = 65535
    """
    Maximum workgroups per dimension (WebGPU limit).

    1-D dispatches that need more workgroups fold into a second dimension.
    """

    max_batch_operations: int = 1000
    """
    Maximum operations per batch submission.

    Prevents unbounded command buffer growth.
    """

    # ========================================================================
    # ADAPTER
    # ========================================================================

    power_preference: str = "high-performance"
    """Adapter power preference passed to the driver for FirstAvailable selection"""


# ============================================================================
# KERNEL SIGNATURE TYPES
# ============================================================================

ARG_INPUT = "input"
ARG_OUTPUT = "output"
ARG_INOUT = "inout"
ARG_SCALAR = "scalar"

BUFFER_ROLES = (ARG_INPUT, ARG_OUTPUT, ARG_INOUT)


@dataclass(frozen=True)
class KernelArg:
    """
    One positional kernel argument

    Buffer roles bind storage buffers in declaration order. Scalar roles are
    packed, in declaration order, into a single uniform struct bound after
    the last buffer.
    """

    name: str
    role: str
    dtype: str = "f32"


@dataclass(frozen=True)
class KernelSignature:
    """
    Typed descriptor of a kernel: entry point, ordered arguments, WGSL source

    This dataclass is immutable - do not modify fields after creation.
    """

    name: str
    args: Tuple[KernelArg, ...]
    source: str
    dims: int  # 1 for elementwise kernels, 2 for tiled kernels

    @property
    def buffer_args(self) -> Tuple[KernelArg, ...]:
        return tuple(arg for arg in self.args if arg.role in BUFFER_ROLES)

    @property
    def scalar_args(self) -> Tuple[KernelArg, ...]:
        return tuple(arg for arg in self.args if arg.role == ARG_SCALAR)


@dataclass(frozen=True)
class LaunchGeometry:
    """
    Work-item geometry for a single dispatch

    global_size is the logical grid ((n,) or (rows, cols)); workgroups is what
    is passed to dispatch_workgroups (x, y, z).
    """

    global_size: Tuple[int, ...]
    workgroup_size: Tuple[int, ...]
    workgroups: Tuple[int, int, int]


# ============================================================================
# DEVICE TYPES
# ============================================================================


@dataclass
class PipelineCache:
    """
    Compiled kernel set, keyed by kernel name
    """

    pipelines: Dict[str, wgpu.GPUComputePipeline] = field(default_factory=dict)
    signatures: Dict[str, KernelSignature] = field(default_factory=dict)


@dataclass
class BatchState:
    """
    State for batched GPU operations
    """

    encoder: Optional[wgpu.GPUCommandEncoder]
    retained_buffers: List[wgpu.GPUBuffer] = field(default_factory=list)
    operation_count: int = 0


@dataclass
class GPUContext:
    """
    Compute context: one device, one queue, one compiled kernel set

    Shared by every Matrix created against it. batch_state is the only
    mutable field and is owned by batch_begin/batch_commit.
    """

    device: wgpu.GPUDevice
    config: GPUConfig
    pipeline_cache: PipelineCache
    adapter: Optional[wgpu.GPUAdapter] = None
    adapter_name: str = ""
    batch_state: Optional[BatchState] = None

    @property
    def queue(self) -> wgpu.GPUQueue:
        return self.device.queue


@dataclass
class BindGroupEntry:
    """
    Type-safe bind group entry

    This dataclass is immutable - do not modify fields after creation.
    """

    binding: int
    buffer: wgpu.GPUBuffer
    offset: int
    size: int


# ============================================================================
# GPU BUFFER TYPES
# ============================================================================


@dataclass(frozen=True)
class DeviceBuffer:
    """
    Device buffer of float32 elements

    The element count is fixed at creation. The underlying GPU buffer
    contents may be mutated by operations.
    """

    buffer: wgpu.GPUBuffer
    size: int

    @property
    def nbytes(self) -> int:
        return self.size * 4
