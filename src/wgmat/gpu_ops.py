"""Shape validation, launch geometry and kernel dispatch"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import wgpu

from .gpu_buffer import queue_wait, uniform_buffer_create
from .gpu_device import pipeline_get
from .gpu_errors import ContextMismatchError, DispatchError, ShapeError
from .gpu_types import (
    BatchState,
    BindGroupEntry,
    DeviceBuffer,
    GPUConfig,
    GPUContext,
    KernelSignature,
    LaunchGeometry,
)

logger = logging.getLogger(__name__)

Shape = Tuple[int, int]
Scalar = Union[int, float]

# ============================================================================
# VALIDATION
# ============================================================================


def validate_extents(rows: int, cols: int, operation: Optional[str] = None) -> None:
    """Matrix extents must both be positive.

    Raises:
        ShapeError: If either extent is <= 0
    """
    if rows <= 0 or cols <= 0:
        raise ShapeError(
            f"Matrix dimensions must be positive, got ({rows}, {cols})", operation
        )


def validate_same_shape(a: Shape, b: Shape, operation: str) -> None:
    """Elementwise binary operations need identical extents.

    Raises:
        ShapeError: If shapes differ
    """
    if a != b:
        raise ShapeError(f"Shape mismatch: a={a}, b={b}", operation)


def validate_dot_shapes(a: Shape, b: Shape, operation: str) -> Tuple[int, int, int]:
    """Validate shapes for matrix multiplication.

    Returns:
        Tuple of (M, K, N) dimensions

    Raises:
        ShapeError: If a.cols != b.rows
    """
    M, K = a
    K2, N = b

    if K != K2:
        raise ShapeError(f"Dimension mismatch a.cols={K} != b.rows={K2}", operation)

    return M, K, N


def validate_output_shape(out: Shape, expected: Shape, operation: str) -> None:
    """
    Raises:
        ShapeError: If the destination does not have the result shape
    """
    if out != expected:
        raise ShapeError(
            f"Output shape {out} doesn't match expected {expected}", operation
        )


def validate_contexts(
    ctx: GPUContext, others: Sequence[GPUContext], operation: str
) -> None:
    """Every operand must belong to the same compute context.

    Raises:
        ContextMismatchError: If any context differs from ctx
    """
    for other in others:
        if other is not ctx:
            raise ContextMismatchError(
                operation, "operands were created on different compute contexts"
            )


def validate_no_alias(
    out: DeviceBuffer, operands: Sequence[DeviceBuffer], operation: str
) -> None:
    """
    Raises:
        DispatchError: If the destination buffer is also an operand
    """
    for operand in operands:
        if out.buffer is operand.buffer:
            raise DispatchError(operation, "output buffer aliases an input operand")


# ============================================================================
# LAUNCH GEOMETRY
# ============================================================================


def _div_ceil(a: int, b: int) -> int:
    return (a + b - 1) // b


def geometry_1d(config: GPUConfig, n: int, operation: str) -> LaunchGeometry:
    """
    Geometry for elementwise kernels over n elements

    Workgroup counts above max_workgroups_per_dim fold into rows of
    max_workgroups_per_dim workgroups; kernels linearize the index as
    gid.y * num_workgroups.x * workgroup_size + gid.x and bounds-check it.

    Raises:
        ShapeError: If n needs more than max_workgroups_per_dim^2 workgroups
    """
    if n <= 0:
        raise ShapeError(f"Element count must be positive, got {n}", operation)

    workgroup_size = config.default_workgroup_size
    max_workgroups = config.max_workgroups_per_dim
    groups = _div_ceil(n, workgroup_size)

    if groups <= max_workgroups:
        workgroups = (groups, 1, 1)
    else:
        rows = _div_ceil(groups, max_workgroups)
        if rows > max_workgroups:
            raise ShapeError(
                f"{n} elements need {groups} workgroups, exceeding "
                f"{max_workgroups}x{max_workgroups}",
                operation,
            )
        workgroups = (max_workgroups, rows, 1)

    return LaunchGeometry(
        global_size=(n,), workgroup_size=(workgroup_size,), workgroups=workgroups
    )


def geometry_2d(
    config: GPUConfig, rows: int, cols: int, operation: str
) -> LaunchGeometry:
    """
    Geometry for tiled kernels over a (rows, cols) grid

    x runs over columns and y over rows, one tile per workgroup. An axis with
    more than max_workgroups_per_dim tiles is clamped to that many workgroups
    and the kernels stride over the remaining tiles.

    Raises:
        ShapeError: If rows or cols <= 0
    """
    validate_extents(rows, cols, operation)

    tile = config.matmul_tile_size
    max_workgroups = config.max_workgroups_per_dim
    workgroups_x = min(_div_ceil(cols, tile), max_workgroups)
    workgroups_y = min(_div_ceil(rows, tile), max_workgroups)

    return LaunchGeometry(
        global_size=(rows, cols),
        workgroup_size=(tile, tile),
        workgroups=(workgroups_x, workgroups_y, 1),
    )


# ============================================================================
# ARGUMENT BINDING
# ============================================================================

_SCALAR_DTYPES = {"f32": np.float32, "u32": np.uint32, "i32": np.int32}


def params_pack(signature: KernelSignature, scalars: Mapping[str, Scalar]) -> bytes:
    """
    Pack scalar arguments, in declared order, into uniform buffer bytes

    Every field is 4 bytes; the result is zero-padded to a multiple of 16.

    Raises:
        DispatchError: If a declared scalar is missing or an unknown one given
    """
    expected = [arg.name for arg in signature.scalar_args]
    if sorted(expected) != sorted(scalars):
        raise DispatchError(
            signature.name,
            f"scalar arguments {sorted(scalars)} don't match declared {expected}",
        )

    packed = b"".join(
        np.array([scalars[arg.name]], dtype=_SCALAR_DTYPES[arg.dtype]).tobytes()
        for arg in signature.scalar_args
    )
    padding = (-len(packed)) % 16
    return packed + b"\x00" * padding


def create_bind_group_entries(entries: List[BindGroupEntry]) -> List[Dict]:
    """Convert typed BindGroupEntry list to wgpu bind group entry format."""
    return [
        {
            "binding": entry.binding,
            "resource": {
                "buffer": entry.buffer,
                "offset": entry.offset,
                "size": entry.size,
            },
        }
        for entry in entries
    ]


def _bind_group_entries(
    signature: KernelSignature,
    buffers: Sequence[DeviceBuffer],
    params_buffer: Optional[wgpu.GPUBuffer],
    params_size: int,
) -> List[BindGroupEntry]:
    if len(buffers) != len(signature.buffer_args):
        raise DispatchError(
            signature.name,
            f"expected {len(signature.buffer_args)} buffers, got {len(buffers)}",
        )

    entries = [
        BindGroupEntry(binding, buf.buffer, 0, buf.nbytes)
        for binding, buf in enumerate(buffers)
    ]
    if params_buffer is not None:
        entries.append(BindGroupEntry(len(buffers), params_buffer, 0, params_size))
    return entries


# ============================================================================
# DISPATCH
# ============================================================================


def dispatch(
    ctx: GPUContext,
    name: str,
    buffers: Sequence[DeviceBuffer],
    scalars: Mapping[str, Scalar],
    geometry: LaunchGeometry,
    wait: bool = True,
) -> None:
    """
    Bind arguments to a compiled kernel and enqueue one dispatch.

    With an open batch the dispatch is recorded into the batch encoder and
    submitted by batch_commit(). Otherwise it is submitted immediately and,
    if wait is True, this call blocks until the queue has drained.

    Args:
        ctx: Compute context
        name: Kernel name
        buffers: Storage buffers in the kernel's declared order
        scalars: Scalar arguments by name
        geometry: Launch geometry
        wait: Block until completion (ignored inside a batch)

    Raises:
        DispatchError: If binding, enqueue or the queue wait fails, or the
                       batch operation limit is reached
    """
    pipeline, signature = pipeline_get(ctx, name)
    batch_state = ctx.batch_state

    if batch_state is not None:
        max_ops = ctx.config.max_batch_operations
        if batch_state.operation_count >= max_ops:
            raise DispatchError(
                name,
                f"Batch operation limit ({max_ops}) exceeded. "
                f"Call batch_commit() to flush operations.",
            )

    params = params_pack(signature, scalars)

    try:
        params_buffer = uniform_buffer_create(ctx, params) if params else None
        entries = _bind_group_entries(signature, buffers, params_buffer, len(params))
        bind_group = ctx.device.create_bind_group(
            layout=pipeline.get_bind_group_layout(0),
            entries=create_bind_group_entries(entries),
        )

        if batch_state is not None:
            encoder = batch_state.encoder
        else:
            encoder = ctx.device.create_command_encoder()

        compute_pass = encoder.begin_compute_pass()
        compute_pass.set_pipeline(pipeline)
        compute_pass.set_bind_group(0, bind_group)
        compute_pass.dispatch_workgroups(*geometry.workgroups)
        compute_pass.end()

        if batch_state is not None:
            # Keep the uniform buffer alive until the batch is submitted
            if params_buffer is not None:
                batch_state.retained_buffers.append(params_buffer)
            batch_state.operation_count += 1
        else:
            ctx.queue.submit([encoder.finish()])
            if wait:
                queue_wait(ctx)
    except wgpu.GPUError as e:
        raise DispatchError(name, str(e)) from e

    logger.debug(
        "Dispatched %s with workgroups %s%s",
        name,
        geometry.workgroups,
        " (batched)" if batch_state is not None else "",
    )


# ============================================================================
# BATCHING
# ============================================================================


def batch_begin(ctx: GPUContext) -> BatchState:
    """
    Open a batch: subsequent dispatches on ctx are recorded, not submitted

    Raises:
        DispatchError: If a batch is already open
    """
    if ctx.batch_state is not None:
        raise DispatchError("batch_begin", "a batch is already open on this context")

    ctx.batch_state = BatchState(encoder=ctx.device.create_command_encoder())
    return ctx.batch_state


def batch_commit(ctx: GPUContext) -> int:
    """
    Submit every recorded dispatch in one command buffer and wait for it.

    Returns:
        Number of dispatches submitted

    Raises:
        DispatchError: If no batch is open or submission fails
    """
    batch_state = ctx.batch_state
    if batch_state is None:
        raise DispatchError("batch_commit", "no batch is open on this context")

    # The batch is closed even if submission fails
    ctx.batch_state = None

    try:
        ctx.queue.submit([batch_state.encoder.finish()])
        queue_wait(ctx)
    except wgpu.GPUError as e:
        raise DispatchError("batch_commit", str(e)) from e
    finally:
        batch_state.retained_buffers.clear()

    logger.debug("Committed batch of %d operations", batch_state.operation_count)
    return batch_state.operation_count
