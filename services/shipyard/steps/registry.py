"""Step registry, keyed by step name.

Concrete step modules register themselves with @register_step when imported;
load_steps() imports them all and is called once by the executor.
"""

from shipyard.errors import UnknownStepError
from shipyard.logging_config import get_logger
from shipyard.steps.base import Step

logger = get_logger(__name__)

STEP_REGISTRY: dict[str, type[Step]] = {}

# Canonical provisioning order, as presented to clients
STEP_SEQUENCE = (
    "connection-verify",
    "deploy-key-generation",
    "database-create",
    "folder-setup",
    "env-setup",
    "env-update",
    "ssh-key-setup",
    "deploy-workflow-update",
)


def register_step(cls: type[Step]) -> type[Step]:
    existing = STEP_REGISTRY.get(cls.name)
    if existing is not None and existing is not cls:
        raise ValueError(f"Step {cls.name!r} already registered by {existing.__qualname__}")
    STEP_REGISTRY[cls.name] = cls
    return cls


def get_step(name: str) -> Step:
    try:
        return STEP_REGISTRY[name]()
    except KeyError:
        raise UnknownStepError(f"Unknown step: {name}") from None


def load_steps() -> None:
    """Import every concrete step module so it registers itself."""
    from shipyard.steps import (  # noqa: F401
        connection,
        database,
        deploy_key,
        deploy_workflow,
        env,
        folder,
        ssh_key,
    )

    logger.debug("Steps loaded", steps=sorted(STEP_REGISTRY))
