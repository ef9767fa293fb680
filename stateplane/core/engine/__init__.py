"""Engine — runtime, finalizer and run scope.

Public re-exports for convenient access.
"""

from stateplane.core.engine.finalizer import Finalizer, SweepReport
from stateplane.core.engine.runtime import ApplyResult, ResourceRuntime
from stateplane.core.engine.scope import Scope, open_project_scope, open_scope

__all__ = [
    "ApplyResult",
    "Finalizer",
    "ResourceRuntime",
    "Scope",
    "SweepReport",
    "open_project_scope",
    "open_scope",
]
