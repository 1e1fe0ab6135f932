"""Device buffer allocation and host transfers"""

from typing import Sequence, Union

import numpy as np
import wgpu

from .gpu_errors import DispatchError, ShapeError
from .gpu_types import DeviceBuffer, GPUContext

STORAGE_USAGE = (
    wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_SRC | wgpu.BufferUsage.COPY_DST
)

# ============================================================================
# BASIC BUFFER OPERATIONS
# ============================================================================


def buffer_allocate(ctx: GPUContext, n: int) -> DeviceBuffer:
    """Allocate a zero-filled device buffer of n float32 elements.

    WebGPU zero-initializes new buffers, so no clear pass is needed.

    Raises:
        DispatchError: If the device refuses the allocation
        ShapeError: If n <= 0
    """
    if n <= 0:
        raise ShapeError(f"Buffer size must be positive, got {n}")

    try:
        buffer = ctx.device.create_buffer(size=n * 4, usage=STORAGE_USAGE)
    except wgpu.GPUError as e:
        raise DispatchError("allocate", str(e)) from e
    return DeviceBuffer(buffer=buffer, size=n)


def buffer_upload(
    ctx: GPUContext, host: Union[np.ndarray, Sequence[float]], n: int
) -> DeviceBuffer:
    """Create a device buffer holding a copy of n host float32 values.

    Args:
        ctx: Compute context
        host: Host values in row-major order
        n: Expected element count

    Returns:
        Device buffer of exactly n elements

    Raises:
        AssertionError: If host does not hold exactly n values
        DispatchError: If the device refuses the buffer
        ShapeError: If n <= 0
    """
    data = np.ascontiguousarray(host, dtype=np.float32).ravel()

    if data.size != n:
        raise AssertionError(f"Host data has {data.size} elements, expected {n}")
    if n <= 0:
        raise ShapeError(f"Buffer size must be positive, got {n}")

    try:
        buffer = ctx.device.create_buffer_with_data(data=data, usage=STORAGE_USAGE)
    except wgpu.GPUError as e:
        raise DispatchError("upload", str(e)) from e
    return DeviceBuffer(buffer=buffer, size=n)


def buffer_download(ctx: GPUContext, buffer: DeviceBuffer, n: int) -> np.ndarray:
    """Read n float32 values from a device buffer into a fresh host array.

    Creates temporary staging buffer, copies GPU data to it, maps and reads.
    The staging buffer is destroyed after reading. Mapping waits for all work
    previously submitted to the queue.

    Raises:
        DispatchError: If a batch is open on the context or the read fails
        ShapeError: If n exceeds the buffer size
    """
    if ctx.batch_state is not None:
        raise DispatchError(
            "download", "cannot read while a batch is open, call batch_commit first"
        )
    if not 0 < n <= buffer.size:
        raise ShapeError(f"Cannot read {n} elements from buffer of {buffer.size}")

    size_bytes = n * 4

    try:
        staging = ctx.device.create_buffer(
            size=size_bytes, usage=wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.MAP_READ
        )

        encoder = ctx.device.create_command_encoder()
        encoder.copy_buffer_to_buffer(buffer.buffer, 0, staging, 0, size_bytes)
        ctx.queue.submit([encoder.finish()])

        staging.map_sync(wgpu.MapMode.READ)
        try:
            out_data = np.frombuffer(staging.read_mapped(), dtype=np.float32).copy()
        finally:
            staging.unmap()
            staging.destroy()
    except wgpu.GPUError as e:
        raise DispatchError("download", str(e)) from e

    return out_data


# ============================================================================
# UNIFORM BUFFERS
# ============================================================================


def uniform_buffer_create(ctx: GPUContext, data: bytes) -> wgpu.GPUBuffer:
    """Create a uniform buffer initialized with packed scalar arguments"""
    return ctx.device.create_buffer_with_data(
        data=data, usage=wgpu.BufferUsage.UNIFORM | wgpu.BufferUsage.COPY_DST
    )


# ============================================================================
# QUEUE SYNCHRONIZATION
# ============================================================================


def queue_wait(ctx: GPUContext) -> None:
    """Block until all work submitted to the queue has completed.

    Submits a 4-byte copy into a mappable staging buffer and maps it; the map
    resolves only after that copy, and every submission before it, has run.
    """
    source = ctx.device.create_buffer_with_data(
        data=bytes(4), usage=wgpu.BufferUsage.COPY_SRC
    )
    staging = ctx.device.create_buffer(
        size=4, usage=wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.MAP_READ
    )

    encoder = ctx.device.create_command_encoder()
    encoder.copy_buffer_to_buffer(source, 0, staging, 0, 4)
    ctx.queue.submit([encoder.finish()])

    staging.map_sync(wgpu.MapMode.READ)
    staging.unmap()
    staging.destroy()
    source.destroy()
