"""
Pytest configuration and shared fixtures for wgmat tests.

GPU tests request the `ctx` fixture and are skipped when no adapter can be
opened. Everything else runs against fake contexts that have no device, so a
test that accidentally reaches the device fails with AttributeError.
"""

import numpy as np
import pytest

from wgmat.gpu_device import context_create
from wgmat.gpu_matrix import Matrix
from wgmat.gpu_types import DeviceBuffer, GPUConfig, GPUContext, PipelineCache


# =============================================================================
# GPU fixtures
# =============================================================================


@pytest.fixture(scope="session")
def ctx():
    """Shared compute context on the first available adapter."""
    try:
        return context_create()
    except RuntimeError as e:
        pytest.skip(f"No usable GPU adapter: {e}")


@pytest.fixture
def rng():
    return np.random.default_rng(42)


# =============================================================================
# Device-free fixtures
# =============================================================================


def make_fake_context(config=None):
    return GPUContext(
        device=None,
        config=config or GPUConfig(),
        pipeline_cache=PipelineCache(),
        adapter_name="fake",
    )


def make_fake_matrix(ctx, rows, cols):
    """Matrix whose buffer is an opaque placeholder."""
    return Matrix(ctx, DeviceBuffer(buffer=object(), size=rows * cols), rows, cols)


@pytest.fixture
def fake_ctx():
    return make_fake_context()


@pytest.fixture
def make_other_ctx():
    """Factory for additional, distinct fake contexts."""
    return make_fake_context


@pytest.fixture
def fake_matrix(fake_ctx):
    """Factory for device-free matrices, on fake_ctx unless another is given."""

    def make(rows, cols, ctx=None):
        return make_fake_matrix(ctx or fake_ctx, rows, cols)

    return make


class FakeAdapter:
    def __init__(self, name, **info):
        self.info = {"device": name, **info}

    def __repr__(self):
        return f"FakeAdapter({self.info['device']!r})"


@pytest.fixture
def fake_adapters():
    return [
        FakeAdapter("llvmpipe (LLVM 15.0.7, 256 bits)", adapter_type="CPU"),
        FakeAdapter("NVIDIA GeForce RTX 3060", adapter_type="DiscreteGPU"),
        FakeAdapter("Intel(R) UHD Graphics 620", adapter_type="IntegratedGPU"),
    ]
