from .base import ExecOptions, Sandbox
from .local import LocalSandbox

__all__ = ["ExecOptions", "Sandbox", "LocalSandbox"]
