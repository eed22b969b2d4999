from .errors import FatalError, NoExistingInstallation, PullAborted, RenderError, StackError, ToolInstallError
from .models import Flavor, HostProfile, StackConfig, ToolchainState
from .paths import HostPaths
from .workflow import RunOutcome, RunStatus, Workflow

__all__ = [
    "FatalError",
    "Flavor",
    "HostPaths",
    "HostProfile",
    "NoExistingInstallation",
    "PullAborted",
    "RenderError",
    "RunOutcome",
    "RunStatus",
    "StackConfig",
    "StackError",
    "ToolInstallError",
    "ToolchainState",
    "Workflow",
]
