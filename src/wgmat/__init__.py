"""
GPU-resident dense float32 matrices on WebGPU (wgpu)
"""

from .gpu_buffer import buffer_allocate, buffer_download, buffer_upload
from .gpu_device import (
    ByIndex,
    ByName,
    ByPredicate,
    FirstAvailable,
    adapters_list,
    context_create,
    device_config_auto_detect,
    device_config_create,
    device_config_validate,
)
from .gpu_errors import (
    ContextMismatchError,
    DeviceError,
    DeviceNotFoundError,
    DeviceUnavailableError,
    DispatchError,
    KernelBuildError,
    ShapeError,
    WgmatError,
)
from .gpu_kernels import kernel_set_create, kernel_signature_validate
from .gpu_matrix import (
    Matrix,
    add,
    dot,
    hadamard,
    matrix_create,
    matrix_from_array,
    matrix_from_vec,
    matrix_to_array,
    matrix_to_vec,
    scalar_multiply,
    sigmoid,
    sigmoid_prime,
    square,
    square_in_place,
    subtract,
    transpose,
)
from .gpu_ops import batch_begin, batch_commit
from .gpu_types import GPUConfig, GPUContext, KernelArg, KernelSignature

__version__ = "0.1.0"

__all__ = [
    # Context
    "context_create",
    "adapters_list",
    "FirstAvailable",
    "ByIndex",
    "ByName",
    "ByPredicate",
    "GPUContext",
    # Configuration
    "GPUConfig",
    "device_config_create",
    "device_config_auto_detect",
    "device_config_validate",
    # Kernels
    "KernelArg",
    "KernelSignature",
    "kernel_set_create",
    "kernel_signature_validate",
    # Buffers
    "buffer_allocate",
    "buffer_upload",
    "buffer_download",
    # Matrix
    "Matrix",
    "matrix_create",
    "matrix_from_vec",
    "matrix_from_array",
    "matrix_to_vec",
    "matrix_to_array",
    # Operations
    "square",
    "square_in_place",
    "add",
    "subtract",
    "hadamard",
    "scalar_multiply",
    "sigmoid",
    "sigmoid_prime",
    "transpose",
    "dot",
    "batch_begin",
    "batch_commit",
    # Errors
    "WgmatError",
    "DeviceError",
    "DeviceNotFoundError",
    "KernelBuildError",
    "DeviceUnavailableError",
    "DispatchError",
    "ContextMismatchError",
    "ShapeError",
]
