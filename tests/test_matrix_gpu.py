"""Operation catalog on a real adapter, checked against numpy."""

import numpy as np
import pytest

import wgmat
from wgmat import GPUConfig, Matrix
from wgmat.gpu_errors import ContextMismatchError, DispatchError


def sigmoid_np(x):
    return 1.0 / (1.0 + np.exp(-x))


@pytest.fixture(scope="module")
def folded_ctx():
    """Context whose workgroup limit forces folded 1-D grids and strided 2-D grids."""
    config = GPUConfig(default_workgroup_size=64, matmul_tile_size=8, max_workgroups_per_dim=4)
    try:
        return wgmat.context_create(config=config)
    except RuntimeError as e:
        pytest.skip(f"No usable GPU adapter: {e}")


# =============================================================================
# Construction and readback
# =============================================================================


class TestTransfers:
    def test_zeros(self, ctx):
        m = Matrix.zeros(ctx, 3, 5)
        np.testing.assert_array_equal(m.to_array(), np.zeros((3, 5), dtype=np.float32))

    def test_round_trip_is_exact(self, ctx, rng):
        values = rng.standard_normal(60).astype(np.float32)
        m = wgmat.matrix_from_vec(ctx, 6, 10, values)
        np.testing.assert_array_equal(m.to_vec(), values)

    def test_to_array_is_row_major(self, ctx):
        m = Matrix.from_vec(ctx, 2, 3, [1, 2, 3, 4, 5, 6])
        np.testing.assert_array_equal(m.to_array(), [[1, 2, 3], [4, 5, 6]])

    def test_readback_does_not_alias_device_memory(self, ctx):
        m = Matrix.from_vec(ctx, 1, 4, [1, 2, 3, 4])
        host = m.to_vec()
        host[:] = 0
        np.testing.assert_array_equal(m.to_vec(), [1, 2, 3, 4])

    def test_buffers(self, ctx):
        buffer = wgmat.buffer_upload(ctx, [1.5, 2.5, 3.5], 3)
        np.testing.assert_array_equal(wgmat.buffer_download(ctx, buffer, 3), [1.5, 2.5, 3.5])
        zeros = wgmat.buffer_allocate(ctx, 7)
        np.testing.assert_array_equal(wgmat.buffer_download(ctx, zeros, 7), np.zeros(7))


# =============================================================================
# Operation catalog
# =============================================================================


class TestElementwise:
    def test_square(self, ctx):
        m = Matrix.from_vec(ctx, 1, 10, [2.0] * 10)
        np.testing.assert_array_equal(m.square().to_vec(), [4.0] * 10)

    def test_square_returns_new_matrix(self, ctx):
        m = Matrix.from_vec(ctx, 1, 3, [1.0, 2.0, 3.0])
        squared = wgmat.square(m)
        assert squared is not m
        np.testing.assert_array_equal(m.to_vec(), [1.0, 2.0, 3.0])

    def test_square_in_place(self, ctx):
        m = Matrix.from_vec(ctx, 2, 2, [1.0, -2.0, 3.0, -4.0])
        assert wgmat.square_in_place(m) is m
        np.testing.assert_array_equal(m.to_vec(), [1.0, 4.0, 9.0, 16.0])

    @pytest.mark.parametrize(
        "op, reference",
        [
            (wgmat.add, np.add),
            (wgmat.subtract, np.subtract),
            (wgmat.hadamard, np.multiply),
        ],
    )
    def test_binary(self, ctx, rng, op, reference):
        a_np = rng.standard_normal((10, 3)).astype(np.float32)
        b_np = rng.standard_normal((10, 3)).astype(np.float32)

        result = op(Matrix.from_array(ctx, a_np), Matrix.from_array(ctx, b_np))

        assert result.shape == (10, 3)
        np.testing.assert_allclose(result.to_array(), reference(a_np, b_np), atol=1e-5)

    def test_subtract_keeps_operand_order(self, ctx):
        a = Matrix.from_vec(ctx, 1, 2, [5.0, 1.0])
        b = Matrix.from_vec(ctx, 1, 2, [2.0, 4.0])
        np.testing.assert_array_equal((a - b).to_vec(), [3.0, -3.0])

    def test_scalar_multiply(self, ctx, rng):
        a_np = rng.standard_normal((7, 9)).astype(np.float32)
        result = wgmat.scalar_multiply(Matrix.from_array(ctx, a_np), -1.5)
        np.testing.assert_allclose(result.to_array(), a_np * -1.5, atol=1e-5)

    def test_sigmoid(self, ctx, rng):
        a_np = rng.standard_normal((10, 3)).astype(np.float32) * 4
        result = Matrix.from_array(ctx, a_np).sigmoid()
        np.testing.assert_allclose(result.to_array(), sigmoid_np(a_np), atol=1e-5)

    def test_sigmoid_prime(self, ctx, rng):
        a_np = rng.standard_normal((10, 3)).astype(np.float32) * 4
        expected = sigmoid_np(a_np) * (1.0 - sigmoid_np(a_np))
        result = Matrix.from_array(ctx, a_np).sigmoid_prime()
        np.testing.assert_allclose(result.to_array(), expected, atol=1e-5)

    def test_sigmoid_saturates(self, ctx):
        result = Matrix.from_vec(ctx, 1, 3, [-100.0, 0.0, 100.0]).sigmoid()
        np.testing.assert_allclose(result.to_vec(), [0.0, 0.5, 1.0], atol=1e-6)

    def test_non_multiple_of_workgroup(self, ctx, rng):
        a_np = rng.standard_normal((1, 257)).astype(np.float32)
        result = wgmat.square(Matrix.from_array(ctx, a_np))
        np.testing.assert_allclose(result.to_array(), a_np * a_np, atol=1e-5)

    def test_folded_grid(self, folded_ctx, rng):
        # 64-wide workgroups, at most 4 per dimension: 1000 elements need 16
        a_np = rng.standard_normal((40, 25)).astype(np.float32)
        b_np = rng.standard_normal((40, 25)).astype(np.float32)
        a = Matrix.from_array(folded_ctx, a_np)
        b = Matrix.from_array(folded_ctx, b_np)

        np.testing.assert_allclose((a + b).to_array(), a_np + b_np, atol=1e-5)
        np.testing.assert_allclose(a.sigmoid().to_array(), sigmoid_np(a_np), atol=1e-5)


class TestTranspose:
    def test_small(self, ctx):
        m = Matrix.from_array(ctx, np.array([[1, 2, 3], [4, 5, 6]], dtype=np.float32))
        t = m.transpose()
        assert t.shape == (3, 2)
        np.testing.assert_array_equal(t.to_array(), [[1, 4], [2, 5], [3, 6]])

    @pytest.mark.parametrize(
        "rows, cols",
        [(1, 1), (1, 64), (64, 1), (17, 23), (33, 65), (100, 50), (128, 256)],
    )
    def test_shapes(self, ctx, rng, rows, cols):
        a_np = rng.standard_normal((rows, cols)).astype(np.float32)
        t = wgmat.transpose(Matrix.from_array(ctx, a_np))
        assert t.shape == (cols, rows)
        np.testing.assert_array_equal(t.to_array(), a_np.T)

    @pytest.mark.parametrize("rows, cols", [(1000, 1), (1, 1000), (70, 45)])
    def test_more_tiles_than_workgroups(self, folded_ctx, rng, rows, cols):
        # 8x8 tiles, at most 4 workgroups per axis
        a_np = rng.standard_normal((rows, cols)).astype(np.float32)
        t = wgmat.transpose(Matrix.from_array(folded_ctx, a_np))
        np.testing.assert_array_equal(t.to_array(), a_np.T)


class TestDot:
    def test_small(self, ctx, rng):
        a_np = rng.standard_normal((10, 3)).astype(np.float32)
        b_np = rng.standard_normal((3, 2)).astype(np.float32)
        c = Matrix.from_array(ctx, a_np).dot(Matrix.from_array(ctx, b_np))
        assert c.shape == (10, 2)
        np.testing.assert_allclose(c.to_array(), a_np @ b_np, atol=1e-3)

    @pytest.mark.parametrize(
        "M, K, N",
        [(1, 1, 1), (16, 16, 16), (17, 23, 19), (1, 64, 128), (128, 64, 1), (33, 65, 129)],
    )
    def test_shapes(self, ctx, rng, M, K, N):
        a_np = rng.standard_normal((M, K)).astype(np.float32)
        b_np = rng.standard_normal((K, N)).astype(np.float32)
        c = wgmat.dot(Matrix.from_array(ctx, a_np), Matrix.from_array(ctx, b_np))
        np.testing.assert_allclose(c.to_array(), a_np @ b_np, rtol=1e-4, atol=1e-3)

    def test_identity(self, ctx, rng):
        a_np = rng.standard_normal((5, 5)).astype(np.float32)
        eye = Matrix.from_array(ctx, np.eye(5, dtype=np.float32))
        np.testing.assert_allclose((Matrix.from_array(ctx, a_np) @ eye).to_array(), a_np, atol=1e-6)

    @pytest.mark.parametrize("M, K, N", [(1000, 1, 1), (1, 3, 500), (70, 19, 45)])
    def test_more_tiles_than_workgroups(self, folded_ctx, rng, M, K, N):
        a_np = rng.standard_normal((M, K)).astype(np.float32)
        b_np = rng.standard_normal((K, N)).astype(np.float32)
        c = wgmat.dot(Matrix.from_array(folded_ctx, a_np), Matrix.from_array(folded_ctx, b_np))
        np.testing.assert_allclose(c.to_array(), a_np @ b_np, rtol=1e-4, atol=1e-3)


# =============================================================================
# Operators, pipelining and batching
# =============================================================================


class TestOperators:
    def test_arithmetic(self, ctx, rng):
        a_np = rng.standard_normal((4, 6)).astype(np.float32)
        b_np = rng.standard_normal((4, 6)).astype(np.float32)
        a = Matrix.from_array(ctx, a_np)
        b = Matrix.from_array(ctx, b_np)

        np.testing.assert_allclose((a + b).to_array(), a_np + b_np, atol=1e-5)
        np.testing.assert_allclose((a - b).to_array(), a_np - b_np, atol=1e-5)
        np.testing.assert_allclose((a * b).to_array(), a_np * b_np, atol=1e-5)
        np.testing.assert_allclose((a * 3).to_array(), a_np * 3, atol=1e-5)
        np.testing.assert_allclose((0.5 * a).to_array(), a_np * 0.5, atol=1e-5)
        np.testing.assert_allclose((a @ b.T).to_array(), a_np @ b_np.T, atol=1e-3)


class TestPipelined:
    def test_out_chain(self, ctx, rng):
        a_np = rng.standard_normal((8, 8)).astype(np.float32)
        a = Matrix.from_array(ctx, a_np)
        tmp = Matrix.zeros(ctx, 8, 8)
        result = Matrix.zeros(ctx, 8, 8)

        assert wgmat.square(a, out=tmp) is tmp
        wgmat.add(tmp, a, out=result)

        np.testing.assert_allclose(result.to_array(), a_np * a_np + a_np, atol=1e-5)

    def test_out_overwrites_previous_contents(self, ctx):
        out = Matrix.from_vec(ctx, 1, 2, [9.0, 9.0])
        wgmat.scalar_multiply(Matrix.from_vec(ctx, 1, 2, [1.0, 2.0]), 2.0, out=out)
        np.testing.assert_array_equal(out.to_vec(), [2.0, 4.0])

    def test_out_aliasing_rejected(self, ctx):
        a = Matrix.from_vec(ctx, 1, 2, [1.0, 2.0])
        with pytest.raises(DispatchError):
            wgmat.square(a, out=a)


class TestBatch:
    def test_commit_runs_in_order(self, ctx, rng):
        a_np = rng.standard_normal((6, 4)).astype(np.float32)
        b_np = rng.standard_normal((4, 6)).astype(np.float32)

        a = Matrix.from_array(ctx, a_np)
        b = Matrix.from_array(ctx, b_np)

        wgmat.batch_begin(ctx)
        try:
            c = a @ b
            d = c.sigmoid()
            e = d.transpose()
        finally:
            count = wgmat.batch_commit(ctx)

        assert count == 3
        np.testing.assert_allclose(e.to_array(), sigmoid_np(a_np @ b_np).T, atol=1e-4)

    def test_download_refused_inside_batch(self, ctx):
        a = Matrix.from_vec(ctx, 1, 1, [1.0])
        wgmat.batch_begin(ctx)
        try:
            with pytest.raises(DispatchError, match="batch"):
                a.to_vec()
        finally:
            wgmat.batch_commit(ctx)


def test_contexts_cannot_be_mixed(ctx, folded_ctx):
    a = Matrix.from_vec(ctx, 1, 2, [1.0, 2.0])
    b = Matrix.from_vec(folded_ctx, 1, 2, [1.0, 2.0])
    with pytest.raises(ContextMismatchError):
        a + b


def test_context_reports_adapter(ctx):
    assert ctx.adapter is not None
    assert ctx.adapter_name
    assert set(ctx.pipeline_cache.pipelines) == set(wgmat.kernel_set_create(ctx.config))
