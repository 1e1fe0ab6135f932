"""Error taxonomy"""

from typing import Optional


class WgmatError(Exception):
    """Base class for every error raised by wgmat"""


# ============================================================================
# DEVICE ERRORS
# ============================================================================


class DeviceError(WgmatError, RuntimeError):
    """Context construction failed"""


class DeviceNotFoundError(DeviceError):
    """No adapter is available, or none satisfies the selection policy"""


class KernelBuildError(DeviceError):
    """Kernel source failed to compile or disagrees with its signature"""


class DeviceUnavailableError(DeviceError):
    """The selected adapter did not produce a usable device"""


# ============================================================================
# DISPATCH ERRORS
# ============================================================================


class DispatchError(WgmatError, RuntimeError):
    """Binding, enqueue or queue wait failed for a named operation"""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class ContextMismatchError(DispatchError):
    """Operands were created against different compute contexts"""


# ============================================================================
# SHAPE ERRORS
# ============================================================================


class ShapeError(WgmatError, ValueError):
    """Matrix extents violate an operation precondition"""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(f"{operation}: {message}" if operation else message)
        self.operation = operation
