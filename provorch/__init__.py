"""
provorch - Local inference stack provisioning.

Supervises dependent local services, gates each step on readiness probes,
and runs an idempotent staged pipeline that can be re-run after a failure.
"""

__version__ = "0.1.0"


__all__ = ["OrchestrationRun", "StagePipeline", "Stage", "ServiceSupervisor", "load_config"]

from .config import load_config
from .pipeline import Stage, StagePipeline
from .run import OrchestrationRun
from .supervisor import ServiceSupervisor
