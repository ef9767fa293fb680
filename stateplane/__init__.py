"""
stateplane — declarative resource reconciliation with recorded state.

    from stateplane import Declaration, MockProvider, ProviderRegistry, open_scope
"""

from stateplane.adapters import MockProvider, Provider, ProviderContext, ProviderRegistry
from stateplane.core.engine import Scope, SweepReport, open_project_scope, open_scope
from stateplane.core.models import Declaration, Phase, ResourceOutput
from stateplane.core.secrets import Secret, secret

__version__ = "0.1.0"

__all__ = [
    "Declaration",
    "MockProvider",
    "Phase",
    "Provider",
    "ProviderContext",
    "ProviderRegistry",
    "ResourceOutput",
    "Scope",
    "Secret",
    "SweepReport",
    "__version__",
    "open_project_scope",
    "open_scope",
    "secret",
]
