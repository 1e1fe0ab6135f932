"""Device selection, context construction and configuration"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple, Union

import wgpu

from .gpu_errors import (
    DeviceNotFoundError,
    DeviceUnavailableError,
    DispatchError,
    KernelBuildError,
)
from .gpu_kernels import (
    SUPPORTED_WORKGROUP_SIZES,
    kernel_set_create,
    kernel_signature_validate,
)
from .gpu_types import GPUConfig, GPUContext, KernelSignature, PipelineCache

logger = logging.getLogger(__name__)

# ============================================================================
# DEVICE SELECTION
# ============================================================================


def adapter_name(adapter: Any) -> str:
    """Human readable adapter name as reported by the driver"""
    info = adapter.info
    return info.get("device") or info.get("description") or "unknown"


@dataclass(frozen=True)
class FirstAvailable:
    """Pick the first adapter in enumeration order"""

    def select(self, adapters: Sequence[Any]) -> Any:
        if not adapters:
            raise DeviceNotFoundError("No GPU adapters available")
        return adapters[0]


@dataclass(frozen=True)
class ByIndex:
    """Pick the adapter at a position in enumeration order"""

    index: int

    def select(self, adapters: Sequence[Any]) -> Any:
        if not 0 <= self.index < len(adapters):
            raise DeviceNotFoundError(
                f"Adapter index {self.index} out of range "
                f"({len(adapters)} adapters available)"
            )
        return adapters[self.index]


@dataclass(frozen=True)
class ByName:
    """
    Pick the first adapter whose name contains a substring

    Matching is case-sensitive, the same way the name is printed by
    adapters_list().
    """

    substring: str

    def select(self, adapters: Sequence[Any]) -> Any:
        for adapter in adapters:
            if self.substring in adapter_name(adapter):
                return adapter
        raise DeviceNotFoundError(
            f"No adapter name contains '{self.substring}' "
            f"(available: {[adapter_name(a) for a in adapters]})"
        )


@dataclass(frozen=True)
class ByPredicate:
    """Pick the first adapter whose info mapping satisfies a predicate"""

    predicate: Callable[[Mapping[str, Any]], bool]

    def select(self, adapters: Sequence[Any]) -> Any:
        for adapter in adapters:
            if self.predicate(adapter.info):
                return adapter
        raise DeviceNotFoundError("No adapter satisfies the selection predicate")


DeviceSelector = Union[FirstAvailable, ByIndex, ByName, ByPredicate]


def selector_resolve(selector: Union[DeviceSelector, str, int, None]) -> DeviceSelector:
    """Normalize shorthand selectors: None, a name substring or an index"""
    if selector is None:
        return FirstAvailable()
    if isinstance(selector, str):
        return ByName(selector)
    if isinstance(selector, int):
        return ByIndex(selector)
    return selector


def adapters_enumerate() -> List[wgpu.GPUAdapter]:
    return list(wgpu.gpu.enumerate_adapters_sync())


def adapters_list() -> List[str]:
    """Names of every available adapter, in enumeration order"""
    return [adapter_name(adapter) for adapter in adapters_enumerate()]


def _adapter_select(
    selector: DeviceSelector, power_preference: str
) -> wgpu.GPUAdapter:
    adapters = adapters_enumerate()
    logger.debug("Available adapters: %s", [adapter_name(a) for a in adapters])

    if not adapters:
        raise DeviceNotFoundError("No GPU adapters available")

    if isinstance(selector, FirstAvailable):
        # Let the driver order by power preference when the caller has no opinion
        adapter = wgpu.gpu.request_adapter_sync(power_preference=power_preference)
        if adapter is not None:
            return adapter

    return selector.select(adapters)


# ============================================================================
# CONTEXT
# ============================================================================


def context_create(
    selector: Union[DeviceSelector, str, int, None] = None,
    config: Optional[GPUConfig] = None,
    power_preference: Optional[str] = None,
) -> GPUContext:
    """
    Create a compute context: select an adapter, open a device, build kernels

    Args:
        selector: Device selection policy. A str selects by name substring and
                  an int by enumeration index. None means FirstAvailable().
        config: Optional GPU configuration. If None, derived from the adapter
                name and the device limits.
        power_preference: Passed to the adapter request for FirstAvailable.
                          Defaults to config.power_preference.

    Returns:
        Ready-to-use compute context

    Raises:
        DeviceNotFoundError: No adapter, or none matches the selector
        DeviceUnavailableError: The selected adapter refused to open a device
        KernelBuildError: A kernel failed to compile or disagrees with its
                          signature
        ValueError: If config is invalid
    """
    if power_preference is None:
        power_preference = (config or GPUConfig()).power_preference

    adapter = _adapter_select(selector_resolve(selector), power_preference)
    name = adapter_name(adapter)

    try:
        device = adapter.request_device_sync()
    except (wgpu.GPUError, RuntimeError) as e:
        raise DeviceUnavailableError(f"Adapter '{name}' is not available: {e}") from e

    if config is None:
        config = device_config_auto_detect(device, device_config_create(name))
    device_config_validate(config)

    logger.info(
        "Using adapter %s (max workgroup size %d)",
        name,
        _limit(device.limits, "max_compute_invocations_per_workgroup", 256),
    )

    ctx = GPUContext(
        device=device,
        config=config,
        pipeline_cache=PipelineCache(),
        adapter=adapter,
        adapter_name=name,
    )

    for signature in kernel_set_create(config).values():
        pipeline_create(ctx, signature)

    return ctx


def pipeline_create(
    ctx: GPUContext, signature: KernelSignature
) -> wgpu.GPUComputePipeline:
    """Validate a kernel signature, compile it and register it on the context.

    Raises:
        KernelBuildError: If the signature disagrees with the source or the
                          device rejects the shader
    """
    kernel_signature_validate(signature)

    try:
        shader_module = ctx.device.create_shader_module(code=signature.source)
        pipeline = ctx.device.create_compute_pipeline(
            layout="auto",
            compute={
                "module": shader_module,
                "entry_point": signature.name,
            },
        )
    except wgpu.GPUError as e:
        raise KernelBuildError(f"{signature.name}: {e}") from e

    ctx.pipeline_cache.pipelines[signature.name] = pipeline
    ctx.pipeline_cache.signatures[signature.name] = signature
    logger.debug("Built kernel %s", signature.name)

    return pipeline


def pipeline_get(
    ctx: GPUContext, name: str
) -> Tuple[wgpu.GPUComputePipeline, KernelSignature]:
    """Look up a compiled kernel by name"""
    if name not in ctx.pipeline_cache.pipelines:
        raise DispatchError(name, "kernel not built on this context")
    return ctx.pipeline_cache.pipelines[name], ctx.pipeline_cache.signatures[name]


# ============================================================================
# CONFIGURATION
# ============================================================================


def _limit(limits: Mapping[str, int], name: str, default: int) -> int:
    # wgpu reports limits with hyphenated keys; accept either spelling
    for key in (name.replace("_", "-"), name):
        if key in limits:
            return int(limits[key])
    return default


def device_config_auto_detect(
    device: wgpu.GPUDevice, base: Optional[GPUConfig] = None
) -> GPUConfig:
    """
    Fit a configuration to the limits the device actually granted.

    Workgroup and tile sizes from `base` are reduced until they fit; they are
    never increased.

    Args:
        device: WGPU device (from adapter.request_device_sync())
        base: Starting configuration, GPUConfig() if None

    Returns:
        GPUConfig within the device limits
    """
    base = base or GPUConfig()
    limits = device.limits

    max_invocations = _limit(
        limits, "max_compute_invocations_per_workgroup", base.max_invocations_per_workgroup
    )
    max_size_x = _limit(limits, "max_compute_workgroup_size_x", max_invocations)
    max_workgroups = _limit(
        limits, "max_compute_workgroups_per_dimension", base.max_workgroups_per_dim
    )
    max_storage = _limit(limits, "max_compute_workgroup_storage_size", 16384)

    workgroup_size = base.default_workgroup_size
    while workgroup_size > min(max_invocations, max_size_x):
        workgroup_size //= 2

    # dot_product needs two tiles of tile_size^2 float32 values
    tile_size = base.matmul_tile_size
    while tile_size > 1 and (
        tile_size * tile_size > max_invocations or tile_size * tile_size * 2 * 4 > max_storage
    ):
        tile_size //= 2

    return GPUConfig(
        default_workgroup_size=workgroup_size,
        matmul_tile_size=tile_size,
        max_invocations_per_workgroup=max_invocations,
        max_workgroups_per_dim=min(base.max_workgroups_per_dim, max_workgroups),
        max_batch_operations=base.max_batch_operations,
        power_preference=base.power_preference,
    )


def device_config_create(adapter_name: Optional[str] = None) -> GPUConfig:
    """
    Create GPU configuration tuned for an adapter.

    Auto-tunes parameters based on adapter name if provided.
    Falls back to default config if the adapter is not recognized.

    Args:
        adapter_name: GPU adapter name (e.g., "NVIDIA RTX 4090", "Apple M2")
                      None = use defaults

    Returns:
        GPUConfig tuned for the specified adapter
    """
    if adapter_name is None:
        return GPUConfig()

    name_lower = adapter_name.lower()

    # NVIDIA devices
    if "nvidia" in name_lower or "geforce" in name_lower or "rtx" in name_lower:
        return GPUConfig(matmul_tile_size=16, default_workgroup_size=256)

    # AMD devices
    elif "amd" in name_lower or "radeon" in name_lower:
        return GPUConfig(matmul_tile_size=16, default_workgroup_size=256)

    # Intel devices
    elif "intel" in name_lower:
        return GPUConfig(
            matmul_tile_size=8,  # Intel integrated GPUs have less shared memory
            default_workgroup_size=128,
        )

    # Apple Silicon
    elif "apple" in name_lower or re.search(r"\bm\d+\b", name_lower):
        return GPUConfig(matmul_tile_size=16, default_workgroup_size=256)

    # Software rasterizers (llvmpipe, lavapipe, SwiftShader)
    elif "llvmpipe" in name_lower or "swiftshader" in name_lower:
        return GPUConfig(matmul_tile_size=8, default_workgroup_size=64)

    else:
        return GPUConfig()


def device_config_validate(config: GPUConfig) -> None:
    """
    Validate GPU configuration for correctness.

    Args:
        config: Configuration to validate

    Raises:
        ValueError: If any parameter is invalid
    """
    if config.max_invocations_per_workgroup <= 0:
        raise ValueError(
            f"max_invocations_per_workgroup must be positive, "
            f"got {config.max_invocations_per_workgroup}"
        )

    # Tile sizes must be positive powers of 2
    if (
        config.matmul_tile_size <= 0
        or (config.matmul_tile_size & (config.matmul_tile_size - 1)) != 0
    ):
        raise ValueError(
            f"matmul_tile_size must be power of 2, got {config.matmul_tile_size}"
        )

    if config.matmul_tile_size > 16:
        raise ValueError(
            f"matmul_tile_size too large: {config.matmul_tile_size}. Maximum is 16."
        )

    if config.matmul_tile_size**2 > config.max_invocations_per_workgroup:
        raise ValueError(
            f"matmul_tile_size {config.matmul_tile_size} needs "
            f"{config.matmul_tile_size**2} invocations per workgroup, limit is "
            f"{config.max_invocations_per_workgroup}"
        )

    # Workgroup sizes
    if (
        config.default_workgroup_size <= 0
        or config.default_workgroup_size > config.max_invocations_per_workgroup
    ):
        raise ValueError(
            f"default_workgroup_size must be in (0, "
            f"{config.max_invocations_per_workgroup}], got {config.default_workgroup_size}"
        )

    if config.default_workgroup_size not in SUPPORTED_WORKGROUP_SIZES:
        raise ValueError(
            f"default_workgroup_size must be one of {SUPPORTED_WORKGROUP_SIZES}, "
            f"got {config.default_workgroup_size}"
        )

    # Dispatch limits
    if config.max_workgroups_per_dim <= 0:
        raise ValueError(
            f"max_workgroups_per_dim must be positive, got {config.max_workgroups_per_dim}"
        )

    if config.max_batch_operations <= 0:
        raise ValueError(
            f"max_batch_operations must be positive, got {config.max_batch_operations}"
        )

    if config.power_preference not in ("high-performance", "low-power"):
        raise ValueError(
            f"power_preference must be 'high-performance' or 'low-power', "
            f"got {config.power_preference!r}"
        )
