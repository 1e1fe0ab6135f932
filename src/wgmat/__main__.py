"""Command line tooling: list adapters, run a self-test, benchmark"""

import argparse
import logging
import sys
import time
from typing import Callable, List, Optional, Tuple

import numpy as np

from . import gpu_matrix as gm
from .gpu_device import adapters_list, context_create
from .gpu_errors import WgmatError
from .gpu_types import GPUContext

logger = logging.getLogger("wgmat")

# ============================================================================
# SELF-TEST
# ============================================================================

selftest_shapes = [
    (1, 1, 1, "Scalar (1x1)"),
    (10, 3, 2, "Small rectangular"),
    (16, 16, 16, "Tile aligned"),
    (17, 23, 19, "Prime dimensions"),
    (1, 64, 128, "Single row A"),
    (128, 64, 1, "Single column B"),
    (100, 50, 75, "Non-aligned dims"),
]


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


def _compare(result: np.ndarray, expected: np.ndarray, atol: float) -> Tuple[bool, float]:
    if result.shape != expected.shape:
        return False, float("inf")
    max_error = float(np.max(np.abs(result - expected)))
    return bool(np.allclose(result, expected, rtol=1e-4, atol=atol)), max_error


def selftest_run(ctx: GPUContext, seed: int) -> List[Tuple[str, bool, float]]:
    """Run every catalog operation against a numpy reference"""
    rng = np.random.default_rng(seed)
    results = []

    for M, K, N, desc in selftest_shapes:
        a_np = rng.standard_normal((M, K)).astype(np.float32)
        b_np = rng.standard_normal((M, K)).astype(np.float32)
        d_np = rng.standard_normal((K, N)).astype(np.float32)

        a = gm.matrix_from_array(ctx, a_np)
        b = gm.matrix_from_array(ctx, b_np)
        d = gm.matrix_from_array(ctx, d_np)

        checks: List[Tuple[str, Callable[[], gm.Matrix], np.ndarray, float]] = [
            ("square", lambda: gm.square(a), a_np * a_np, 1e-5),
            ("add", lambda: gm.add(a, b), a_np + b_np, 1e-5),
            ("subtract", lambda: gm.subtract(a, b), a_np - b_np, 1e-5),
            ("hadamard", lambda: gm.hadamard(a, b), a_np * b_np, 1e-5),
            ("scalar_multiply", lambda: gm.scalar_multiply(a, 2.5), a_np * 2.5, 1e-5),
            ("sigmoid", lambda: gm.sigmoid(a), _sigmoid(a_np), 1e-5),
            (
                "sigmoid_prime",
                lambda: gm.sigmoid_prime(a),
                _sigmoid(a_np) * (1.0 - _sigmoid(a_np)),
                1e-5,
            ),
            ("transpose", lambda: gm.transpose(a), a_np.T, 0.0),
            ("dot", lambda: gm.dot(a, d), a_np @ d_np, 1e-3),
        ]

        for name, op, expected, atol in checks:
            label = f"{name} {desc} [{M}x{K}]"
            try:
                passed, max_error = _compare(op().to_array(), expected, atol)
            except WgmatError as e:
                logger.error("%s crashed: %s", label, e)
                passed, max_error = False, float("inf")
            results.append((label, passed, max_error))

    return results


def selftest_command(args: argparse.Namespace) -> int:
    ctx = context_create(args.device)
    print(f"Self-test on {ctx.adapter_name}")
    print("=" * 80)

    results = selftest_run(ctx, args.seed)
    failed = 0
    for label, passed, max_error in results:
        status = "PASS" if passed else "FAIL"
        print(f"{status:6} {label:50} max_err={max_error:.2e}")
        failed += not passed

    print("-" * 80)
    print(f"Total: {len(results)}  Passed: {len(results) - failed}  Failed: {failed}")
    return 0 if failed == 0 else 1


# ============================================================================
# BENCHMARK
# ============================================================================


def _time_op(op: Callable[[], gm.Matrix], repeat: int) -> float:
    """Best wall time in seconds of a blocking operation"""
    op()  # warm up
    best = float("inf")
    for _ in range(repeat):
        start = time.perf_counter()
        op()
        best = min(best, time.perf_counter() - start)
    return best


def bench_command(args: argparse.Namespace) -> int:
    ctx = context_create(args.device)
    print(f"Benchmark on {ctx.adapter_name} (best of {args.repeat})")
    print("=" * 80)

    rng = np.random.default_rng(0)
    for n in args.sizes:
        a = gm.matrix_from_array(ctx, rng.standard_normal((n, n)).astype(np.float32))
        b = gm.matrix_from_array(ctx, rng.standard_normal((n, n)).astype(np.float32))

        dot_s = _time_op(lambda: gm.dot(a, b), args.repeat)
        add_s = _time_op(lambda: gm.add(a, b), args.repeat)
        transpose_s = _time_op(lambda: gm.transpose(a), args.repeat)

        gflops = 2.0 * n**3 / dot_s / 1e9
        print(
            f"{n:6}x{n:<6} dot {dot_s * 1e3:9.3f} ms ({gflops:8.2f} GFLOP/s)  "
            f"add {add_s * 1e3:8.3f} ms  transpose {transpose_s * 1e3:8.3f} ms"
        )
    return 0


# ============================================================================
# ENTRY POINT
# ============================================================================


def devices_command(args: argparse.Namespace) -> int:
    names = adapters_list()
    if not names:
        print("No GPU adapters available")
        return 1
    for index, name in enumerate(names):
        print(f"{index}: {name}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="GPU matrix tooling on WebGPU")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("devices", help="List available GPU adapters")

    selftest_parser = subparsers.add_parser(
        "selftest", help="Check every operation against numpy"
    )
    selftest_parser.add_argument("--device", help="Adapter name substring")
    selftest_parser.add_argument("--seed", type=int, default=42, help="Random seed")

    bench_parser = subparsers.add_parser("bench", help="Time dot, add and transpose")
    bench_parser.add_argument("--device", help="Adapter name substring")
    bench_parser.add_argument(
        "--sizes", type=int, nargs="+", default=[256, 512, 1024], help="Matrix sizes"
    )
    bench_parser.add_argument("--repeat", type=int, default=5, help="Timed runs")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "devices": devices_command,
        "selftest": selftest_command,
        "bench": bench_command,
    }
    if args.command not in commands:
        parser.print_help()
        return 2

    try:
        return commands[args.command](args)
    except WgmatError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
