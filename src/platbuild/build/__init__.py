"""Job dispatch and concurrency control for platform builds.

Provides:
- Ordered job list with sync/async/barrier dispatch
- Load-based admission control
- Singleton run lock with stale-lock reclaim
- LIFO cleanup stack unwound on every exit path
- Checkpointed (commit-or-discard) output tree
- Run-wide abort with process group termination
"""

from .abort import AbortCoordinator, notify_leader
from .checkpoint import CheckpointManager, CheckpointOverlay, merge_tree
from .dispatcher import Dispatcher
from .executor import JobExecutor
from .governor import LoadGovernor
from .jobs import JobDirective, JobMode, parse_job_list
from .lock import SingletonLock
from .resources import ResourceStack
from .state import DispatchState, JobResult, RunState
from .tools import ToolRunner

__all__ = [
    "AbortCoordinator",
    "CheckpointManager",
    "CheckpointOverlay",
    "Dispatcher",
    "DispatchState",
    "JobDirective",
    "JobExecutor",
    "JobMode",
    "JobResult",
    "LoadGovernor",
    "ResourceStack",
    "RunState",
    "SingletonLock",
    "ToolRunner",
    "merge_tree",
    "notify_leader",
    "parse_job_list",
]
