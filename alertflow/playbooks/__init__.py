"""
Response playbooks: definitions, action providers, and the executor.
"""

from alertflow.playbooks.definitions import (
    PlaybookDefinition,
    PlaybookRegistry,
    PlaybookStep,
    PlaybookTrigger,
)

from alertflow.playbooks.providers import (
    ActionProvider,
    ActionResult,
    DryRunActionProvider,
    HttpActionProvider,
    build_action_provider,
)

from alertflow.playbooks.executor import PlaybookExecutor

__all__ = [
    "PlaybookDefinition",
    "PlaybookRegistry",
    "PlaybookStep",
    "PlaybookTrigger",
    "ActionProvider",
    "ActionResult",
    "DryRunActionProvider",
    "HttpActionProvider",
    "build_action_provider",
    "PlaybookExecutor",
]
