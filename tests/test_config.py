"""GPUConfig presets, validation and limit fitting (no GPU needed)."""

from types import SimpleNamespace

import pytest

from wgmat.gpu_device import (
    device_config_auto_detect,
    device_config_create,
    device_config_validate,
)
from wgmat.gpu_types import GPUConfig


def test_default_config_is_valid():
    device_config_validate(GPUConfig())


@pytest.mark.parametrize(
    "name, tile_size, workgroup_size",
    [
        ("NVIDIA GeForce RTX 3060", 16, 256),
        ("AMD Radeon RX 6800", 16, 256),
        ("Intel(R) UHD Graphics 620", 8, 128),
        ("Apple M2", 16, 256),
        ("llvmpipe (LLVM 15.0.7, 256 bits)", 8, 64),
        ("SwiftShader Device (LLVM16.0.0)", 8, 64),
        ("Apple M3 Max", 16, 256),
        ("Some Unknown Accelerator", 16, 256),
    ],
)
def test_vendor_presets(name, tile_size, workgroup_size):
    config = device_config_create(name)

    assert config.matmul_tile_size == tile_size
    assert config.default_workgroup_size == workgroup_size
    device_config_validate(config)


def test_no_adapter_name_gives_defaults():
    assert device_config_create(None) == GPUConfig()


@pytest.mark.parametrize(
    "changes, message",
    [
        ({"matmul_tile_size": 12}, "power of 2"),
        ({"matmul_tile_size": 0}, "power of 2"),
        ({"matmul_tile_size": 32}, "too large"),
        ({"matmul_tile_size": 16, "max_invocations_per_workgroup": 128}, "invocations"),
        ({"default_workgroup_size": 0}, "default_workgroup_size"),
        ({"default_workgroup_size": 512}, "default_workgroup_size"),
        ({"default_workgroup_size": 96}, "one of"),
        ({"max_workgroups_per_dim": 0}, "max_workgroups_per_dim"),
        ({"max_batch_operations": 0}, "max_batch_operations"),
        ({"max_invocations_per_workgroup": 0}, "max_invocations_per_workgroup"),
        ({"power_preference": "fast"}, "power_preference"),
    ],
)
def test_invalid_config(changes, message):
    with pytest.raises(ValueError, match=message):
        device_config_validate(GPUConfig(**changes))


class TestAutoDetect:
    def test_fits_preset_to_small_device(self):
        device = SimpleNamespace(
            limits={
                "max-compute-invocations-per-workgroup": 64,
                "max-compute-workgroup-size-x": 64,
                "max-compute-workgroups-per-dimension": 65535,
                "max-compute-workgroup-storage-size": 16384,
            }
        )
        config = device_config_auto_detect(device, GPUConfig())

        assert config.default_workgroup_size == 64
        assert config.matmul_tile_size == 8
        assert config.max_invocations_per_workgroup == 64
        device_config_validate(config)

    def test_never_grows_base(self):
        device = SimpleNamespace(
            limits={
                "max-compute-invocations-per-workgroup": 1024,
                "max-compute-workgroup-size-x": 1024,
                "max-compute-workgroups-per-dimension": 65535,
                "max-compute-workgroup-storage-size": 32768,
            }
        )
        base = GPUConfig(default_workgroup_size=128, matmul_tile_size=8)
        config = device_config_auto_detect(device, base)

        assert config.default_workgroup_size == 128
        assert config.matmul_tile_size == 8

    def test_workgroup_count_limit(self):
        device = SimpleNamespace(limits={"max-compute-workgroups-per-dimension": 1024})
        config = device_config_auto_detect(device)

        assert config.max_workgroups_per_dim == 1024
        assert config.default_workgroup_size == 256

    def test_underscore_limit_keys(self):
        device = SimpleNamespace(limits={"max_compute_invocations_per_workgroup": 128})
        config = device_config_auto_detect(device)

        assert config.default_workgroup_size == 128
        assert config.matmul_tile_size == 8
