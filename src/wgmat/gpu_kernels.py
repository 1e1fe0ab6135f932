"""WGSL kernels and their typed signatures"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .gpu_errors import KernelBuildError
from .gpu_types import (
    ARG_INOUT,
    ARG_INPUT,
    ARG_OUTPUT,
    ARG_SCALAR,
    GPUConfig,
    KernelArg,
    KernelSignature,
)

SUPPORTED_WORKGROUP_SIZES = (32, 64, 128, 256)

# ============================================================================
# ELEMENTWISE KERNELS
# ============================================================================

# Linear index for 1-D dispatches. The grid folds into workgroup rows when the
# element count needs more than max_workgroups_per_dim workgroups.
_LINEAR_INDEX = "global_id.y * num_workgroups.x * WORKGROUP_SIZE + global_id.x"


def _check_workgroup_size(workgroup_size: int) -> None:
    if workgroup_size not in SUPPORTED_WORKGROUP_SIZES:
        raise ValueError(
            f"workgroup_size must be one of {SUPPORTED_WORKGROUP_SIZES}, "
            f"got {workgroup_size}"
        )


def _check_tile_size(tile_size: int) -> None:
    if tile_size <= 0 or (tile_size & (tile_size - 1)) != 0:
        raise ValueError(f"tile_size must be power of 2, got {tile_size}")
    if tile_size > 16:
        raise ValueError(f"tile_size too large: {tile_size}. Maximum is 16.")


def create_unary_kernel(
    name: str, expression: str, workgroup_size: int, helpers: str = ""
) -> str:
    """
    Generate an elementwise kernel c[i] = f(a[i])

    Args:
        name: Entry point name
        expression: WGSL expression in terms of the f32 value `x`
        workgroup_size: Number of threads per workgroup
        helpers: Optional WGSL helper functions placed before the entry point

    Returns:
        WGSL kernel source code as string

    Raises:
        ValueError: If workgroup_size is invalid
    """
    _check_workgroup_size(workgroup_size)

    return f"""
// Elementwise {name}: c[i] = {expression} with x = a[i]

@group(0) @binding(0) var<storage, read> a: array<f32>;
@group(0) @binding(1) var<storage, read_write> c: array<f32>;

const WORKGROUP_SIZE: u32 = {workgroup_size}u;
{helpers}
@compute @workgroup_size({workgroup_size}, 1, 1)
fn {name}(
    @builtin(global_invocation_id) global_id: vec3<u32>,
    @builtin(num_workgroups) num_workgroups: vec3<u32>
) {{
    let idx = {_LINEAR_INDEX};

    if (idx >= arrayLength(&c)) {{
        return;
    }}

    let x = a[idx];
    c[idx] = {expression};
}}
"""


def create_binary_kernel(name: str, operator: str, workgroup_size: int) -> str:
    """
    Generate an elementwise binary kernel c[i] = a[i] <op> b[i]

    Operand order is preserved, so non-commutative operators are safe.
    """
    _check_workgroup_size(workgroup_size)

    return f"""
// Elementwise {name}: c[i] = a[i] {operator} b[i]

@group(0) @binding(0) var<storage, read> a: array<f32>;
@group(0) @binding(1) var<storage, read> b: array<f32>;
@group(0) @binding(2) var<storage, read_write> c: array<f32>;

const WORKGROUP_SIZE: u32 = {workgroup_size}u;

@compute @workgroup_size({workgroup_size}, 1, 1)
fn {name}(
    @builtin(global_invocation_id) global_id: vec3<u32>,
    @builtin(num_workgroups) num_workgroups: vec3<u32>
) {{
    let idx = {_LINEAR_INDEX};

    if (idx >= arrayLength(&c)) {{
        return;
    }}

    c[idx] = a[idx] {operator} b[idx];
}}
"""


def create_square_in_place_kernel(workgroup_size: int) -> str:
    """Generate in-place square kernel a[i] = a[i] * a[i]"""
    _check_workgroup_size(workgroup_size)

    return f"""
@group(0) @binding(0) var<storage, read_write> a: array<f32>;

const WORKGROUP_SIZE: u32 = {workgroup_size}u;

@compute @workgroup_size({workgroup_size}, 1, 1)
fn square_in_place(
    @builtin(global_invocation_id) global_id: vec3<u32>,
    @builtin(num_workgroups) num_workgroups: vec3<u32>
) {{
    let idx = {_LINEAR_INDEX};

    if (idx >= arrayLength(&a)) {{
        return;
    }}

    let x = a[idx];
    a[idx] = x * x;
}}
"""


def create_scalar_multiply_kernel(workgroup_size: int) -> str:
    """Generate scalar multiply kernel c[i] = a[i] * params.scalar"""
    _check_workgroup_size(workgroup_size)

    return f"""
struct ScalarParams {{
    scalar: f32,
}}

@group(0) @binding(0) var<storage, read> a: array<f32>;
@group(0) @binding(1) var<storage, read_write> c: array<f32>;
@group(0) @binding(2) var<uniform> params: ScalarParams;

const WORKGROUP_SIZE: u32 = {workgroup_size}u;

@compute @workgroup_size({workgroup_size}, 1, 1)
fn multiply_by_scalar(
    @builtin(global_invocation_id) global_id: vec3<u32>,
    @builtin(num_workgroups) num_workgroups: vec3<u32>
) {{
    let idx = {_LINEAR_INDEX};

    if (idx >= arrayLength(&c)) {{
        return;
    }}

    c[idx] = a[idx] * params.scalar;
}}
"""


_SIGMOID_HELPER = """
fn sigmoid_f32(x: f32) -> f32 {
    return 1.0 / (1.0 + exp(-x));
}
"""

# ============================================================================
# TILED KERNELS
# ============================================================================


def create_transpose_kernel(tile_size: int) -> str:
    """
    Generate matrix transpose kernel with bank conflict avoidance

    Each workgroup stages a tile of `a` in workgroup memory and writes it to
    the mirrored tile position of `c`, so both reads and writes stay row-wise.
    Workgroups stride over tiles when the grid is clamped to
    max_workgroups_per_dim.

    Args:
        tile_size: Tile dimension (power of 2, at most 16)

    Returns:
        WGSL kernel source code as string

    Raises:
        ValueError: If tile_size is invalid
    """
    _check_tile_size(tile_size)

    # Pad rows by one element to avoid bank conflicts
    padded_row = tile_size + 1

    return f"""
// Matrix transpose: c[j][i] = a[i][j]
// Tile size: {tile_size}x{tile_size}

struct TransposeParams {{
    rows: u32,
    cols: u32,
}}

@group(0) @binding(0) var<storage, read> a: array<f32>;
@group(0) @binding(1) var<storage, read_write> c: array<f32>;
@group(0) @binding(2) var<uniform> params: TransposeParams;

const TILE_SIZE: u32 = {tile_size}u;
const PADDED_ROW: u32 = {padded_row}u;

var<workgroup> tile: array<f32, {tile_size * padded_row}>;

@compute @workgroup_size({tile_size}, {tile_size}, 1)
fn transpose(
    @builtin(local_invocation_id) local_id: vec3<u32>,
    @builtin(workgroup_id) workgroup_id: vec3<u32>,
    @builtin(num_workgroups) num_workgroups: vec3<u32>
) {{
    let local_row = local_id.y;
    let local_col = local_id.x;

    let tiles_y = (params.rows + TILE_SIZE - 1u) / TILE_SIZE;
    let tiles_x = (params.cols + TILE_SIZE - 1u) / TILE_SIZE;

    // Grid-stride over tiles: the grid may be smaller than the tile count
    for (var tile_row = workgroup_id.y; tile_row < tiles_y; tile_row += num_workgroups.y) {{
        for (var tile_col = workgroup_id.x; tile_col < tiles_x; tile_col += num_workgroups.x) {{
            let in_row = tile_row * TILE_SIZE + local_row;
            let in_col = tile_col * TILE_SIZE + local_col;

            if (in_row < params.rows && in_col < params.cols) {{
                tile[local_row * PADDED_ROW + local_col] = a[in_row * params.cols + in_col];
            }}

            workgroupBarrier();

            // Mirrored tile: c has params.cols rows and params.rows columns
            let out_row = tile_col * TILE_SIZE + local_row;
            let out_col = tile_row * TILE_SIZE + local_col;

            if (out_row < params.cols && out_col < params.rows) {{
                c[out_row * params.rows + out_col] = tile[local_col * PADDED_ROW + local_row];
            }}

            workgroupBarrier();
        }}
    }}
}}
"""


def create_dot_product_kernel(tile_size: int) -> str:
    """
    Generate tiled matrix multiplication kernel: c = a @ b

    a is (M, K), b is (K, N), c is (M, N), all row-major. K and N are passed
    as scalar arguments; M is recovered from the length of `a`.

    Args:
        tile_size: Tile dimension (power of 2, at most 16)

    Returns:
        WGSL kernel source code as string

    Raises:
        ValueError: If tile_size is invalid
    """
    _check_tile_size(tile_size)

    return f"""
// Tiled matrix multiplication: c = a @ b
// Tile size: {tile_size}x{tile_size}

struct DotParams {{
    shared_dim: u32,
    out_cols: u32,
}}

@group(0) @binding(0) var<storage, read> a: array<f32>;
@group(0) @binding(1) var<storage, read> b: array<f32>;
@group(0) @binding(2) var<storage, read_write> c: array<f32>;
@group(0) @binding(3) var<uniform> params: DotParams;

const TILE_SIZE: u32 = {tile_size}u;

var<workgroup> tile_a: array<f32, {tile_size * tile_size}>;
var<workgroup> tile_b: array<f32, {tile_size * tile_size}>;

@compute @workgroup_size({tile_size}, {tile_size}, 1)
fn dot_product(
    @builtin(local_invocation_id) local_id: vec3<u32>,
    @builtin(workgroup_id) workgroup_id: vec3<u32>,
    @builtin(num_workgroups) num_workgroups: vec3<u32>
) {{
    let K = params.shared_dim;
    let N = params.out_cols;
    let M = arrayLength(&a) / K;

    let local_row = local_id.y;
    let local_col = local_id.x;

    let tiles_y = (M + TILE_SIZE - 1u) / TILE_SIZE;
    let tiles_x = (N + TILE_SIZE - 1u) / TILE_SIZE;
    let num_tiles = (K + TILE_SIZE - 1u) / TILE_SIZE;

    // Grid-stride over output tiles: the grid may be smaller than the tile count
    for (var tile_row = workgroup_id.y; tile_row < tiles_y; tile_row += num_workgroups.y) {{
        for (var tile_col = workgroup_id.x; tile_col < tiles_x; tile_col += num_workgroups.x) {{
            let row = tile_row * TILE_SIZE + local_row;
            let col = tile_col * TILE_SIZE + local_col;

            var sum = 0.0;

            for (var t = 0u; t < num_tiles; t++) {{
                let a_col = t * TILE_SIZE + local_col;
                if (row < M && a_col < K) {{
                    tile_a[local_row * TILE_SIZE + local_col] = a[row * K + a_col];
                }} else {{
                    tile_a[local_row * TILE_SIZE + local_col] = 0.0;
                }}

                let b_row = t * TILE_SIZE + local_row;
                if (b_row < K && col < N) {{
                    tile_b[local_row * TILE_SIZE + local_col] = b[b_row * N + col];
                }} else {{
                    tile_b[local_row * TILE_SIZE + local_col] = 0.0;
                }}

                workgroupBarrier();

                for (var k = 0u; k < TILE_SIZE; k++) {{
                    sum += tile_a[local_row * TILE_SIZE + k] * tile_b[k * TILE_SIZE + local_col];
                }}

                workgroupBarrier();
            }}

            if (row < M && col < N) {{
                c[row * N + col] = sum;
            }}
        }}
    }}
}}
"""


# ============================================================================
# KERNEL SET
# ============================================================================

_A = KernelArg("a", ARG_INPUT)
_B = KernelArg("b", ARG_INPUT)
_C = KernelArg("c", ARG_OUTPUT)

UNARY_ARGS = (_A, _C)
BINARY_ARGS = (_A, _B, _C)
SCALAR_MULTIPLY_ARGS = (_A, _C, KernelArg("scalar", ARG_SCALAR, "f32"))
TRANSPOSE_ARGS = (
    _A,
    _C,
    KernelArg("rows", ARG_SCALAR, "u32"),
    KernelArg("cols", ARG_SCALAR, "u32"),
)
DOT_PRODUCT_ARGS = (
    _A,
    _B,
    _C,
    KernelArg("shared_dim", ARG_SCALAR, "u32"),
    KernelArg("out_cols", ARG_SCALAR, "u32"),
)
SQUARE_IN_PLACE_ARGS = (KernelArg("a", ARG_INOUT),)


def kernel_set_create(config: GPUConfig) -> Dict[str, KernelSignature]:
    """
    Build the fixed kernel set for a configuration

    Args:
        config: GPU configuration (workgroup and tile sizes)

    Returns:
        Kernel name -> signature with generated WGSL source
    """
    wg = config.default_workgroup_size
    tile = config.matmul_tile_size

    signatures = [
        KernelSignature("square", UNARY_ARGS, create_unary_kernel("square", "x * x", wg), 1),
        KernelSignature(
            "square_in_place",
            SQUARE_IN_PLACE_ARGS,
            create_square_in_place_kernel(wg),
            1,
        ),
        KernelSignature("add", BINARY_ARGS, create_binary_kernel("add", "+", wg), 1),
        KernelSignature(
            "subtract", BINARY_ARGS, create_binary_kernel("subtract", "-", wg), 1
        ),
        KernelSignature(
            "hadamard", BINARY_ARGS, create_binary_kernel("hadamard", "*", wg), 1
        ),
        KernelSignature(
            "multiply_by_scalar",
            SCALAR_MULTIPLY_ARGS,
            create_scalar_multiply_kernel(wg),
            1,
        ),
        KernelSignature(
            "sigmoid",
            UNARY_ARGS,
            create_unary_kernel("sigmoid", "sigmoid_f32(x)", wg, _SIGMOID_HELPER),
            1,
        ),
        KernelSignature(
            "sigmoid_prime",
            UNARY_ARGS,
            create_unary_kernel(
                "sigmoid_prime",
                "sigmoid_f32(x) * (1.0 - sigmoid_f32(x))",
                wg,
                _SIGMOID_HELPER,
            ),
            1,
        ),
        KernelSignature("transpose", TRANSPOSE_ARGS, create_transpose_kernel(tile), 2),
        KernelSignature(
            "dot_product", DOT_PRODUCT_ARGS, create_dot_product_kernel(tile), 2
        ),
    ]
    return {signature.name: signature for signature in signatures}


# ============================================================================
# SIGNATURE VALIDATION
# ============================================================================

_COMMENT_RE = re.compile(r"//[^\n]*")
_ENTRY_RE = re.compile(r"@compute\s*@workgroup_size\([^)]*\)\s*fn\s+(\w+)\s*\(")
_BINDING_RE = re.compile(
    r"@group\(\s*0\s*\)\s*@binding\(\s*(\d+)\s*\)\s*"
    r"var<\s*(\w+)\s*(?:,\s*(\w+)\s*)?>\s*(\w+)\s*:\s*([^;]+);"
)
_STRUCT_RE = re.compile(r"struct\s+(\w+)\s*\{([^}]*)\}")
_FIELD_RE = re.compile(r"(\w+)\s*:\s*(\w+)")


@dataclass(frozen=True)
class BindingDeclaration:
    binding: int
    address_space: str
    access: str
    name: str
    type_name: str


@dataclass
class KernelDeclarations:
    """Declarations recovered from WGSL source"""

    entry_points: List[str] = field(default_factory=list)
    bindings: Dict[int, BindingDeclaration] = field(default_factory=dict)
    structs: Dict[str, List[Tuple[str, str]]] = field(default_factory=dict)


def kernel_declarations_parse(source: str) -> KernelDeclarations:
    """Extract entry points, group 0 bindings and struct layouts from WGSL"""
    code = _COMMENT_RE.sub("", source)
    declarations = KernelDeclarations()

    declarations.entry_points = _ENTRY_RE.findall(code)

    for match in _BINDING_RE.finditer(code):
        binding = int(match.group(1))
        address_space = match.group(2)
        # Storage defaults to read access when no access mode is given
        access = match.group(3) or ("read" if address_space == "storage" else "")
        declarations.bindings[binding] = BindingDeclaration(
            binding=binding,
            address_space=address_space,
            access=access,
            name=match.group(4),
            type_name=match.group(5).strip(),
        )

    for match in _STRUCT_RE.finditer(code):
        declarations.structs[match.group(1)] = _FIELD_RE.findall(match.group(2))

    return declarations


def kernel_signature_validate(signature: KernelSignature) -> None:
    """
    Check that a kernel's WGSL declarations agree with its typed descriptor.

    Buffer arguments must occupy bindings 0..n-1 in declaration order with the
    matching storage access; scalar arguments must be the fields, in order, of
    the uniform struct at binding n.

    Raises:
        KernelBuildError: On any disagreement
    """
    declarations = kernel_declarations_parse(signature.source)
    name = signature.name

    if name not in declarations.entry_points:
        raise KernelBuildError(
            f"{name}: entry point not found (source declares "
            f"{declarations.entry_points})"
        )

    expected_access = {ARG_INPUT: "read", ARG_OUTPUT: "read_write", ARG_INOUT: "read_write"}

    buffer_args = signature.buffer_args
    for binding, arg in enumerate(buffer_args):
        declared = declarations.bindings.get(binding)
        if declared is None:
            raise KernelBuildError(f"{name}: argument '{arg.name}' has no binding {binding}")
        if declared.address_space != "storage" or declared.type_name != "array<f32>":
            raise KernelBuildError(
                f"{name}: binding {binding} must be a storage array<f32>, "
                f"got var<{declared.address_space}> {declared.type_name}"
            )
        if declared.access != expected_access[arg.role]:
            raise KernelBuildError(
                f"{name}: binding {binding} ('{arg.name}', {arg.role}) declared "
                f"with access '{declared.access}'"
            )

    expected_bindings = set(range(len(buffer_args)))

    scalar_args = signature.scalar_args
    if scalar_args:
        params_binding = len(buffer_args)
        expected_bindings.add(params_binding)
        declared = declarations.bindings.get(params_binding)
        if declared is None or declared.address_space != "uniform":
            raise KernelBuildError(
                f"{name}: scalar arguments need a uniform at binding {params_binding}"
            )
        fields = declarations.structs.get(declared.type_name)
        expected_fields = [(arg.name, arg.dtype) for arg in scalar_args]
        if fields != expected_fields:
            raise KernelBuildError(
                f"{name}: uniform struct {declared.type_name} declares {fields}, "
                f"expected {expected_fields}"
            )

    extra = set(declarations.bindings) - expected_bindings
    if extra:
        raise KernelBuildError(f"{name}: unexpected bindings {sorted(extra)}")
