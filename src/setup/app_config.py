import logging
from pathlib import Path

import inject

from src.app.application.credentials import CredentialIssuer
from src.app.application.orchestrator import TaskOrchestrator
from src.app.application.pii import PiiCensor
from src.app.application.registry import ToolRegistry
from src.app.application.router import ToolCallRouter
from src.app.application.supervisor import BackendSupervisor
from src.app.domain.repositories import SandboxRunner, StorageRepository
from src.app.infrastructure.memory.repositories import InMemoryStorageRepository
from src.app.infrastructure.sandbox.subprocess_sandbox import SubprocessSandbox
from src.setup.pii_config import get_pii_settings
from src.setup.registry_config import get_registry_settings

logger = logging.getLogger(__name__)


def build_registry() -> ToolRegistry:
    path = Path(get_registry_settings().TOOL_CATALOG_PATH)
    if not path.is_file():
        logger.warning("Tool catalog %s not found; starting with no tools", path)
        return ToolRegistry()
    registry = ToolRegistry.from_file(path)
    logger.info("Loaded %d tools from %s", len(registry), path)
    return registry


def _config(binder: inject.Binder) -> None:
    storage = InMemoryStorageRepository()
    registry = build_registry()
    censor = PiiCensor(enabled=get_pii_settings().PII_CENSOR_ENABLED)
    issuer = CredentialIssuer(storage)
    supervisor = BackendSupervisor()
    sandbox = SubprocessSandbox()
    router = ToolCallRouter(
        issuer=issuer, registry=registry, supervisor=supervisor, censor=censor
    )
    orchestrator = TaskOrchestrator(
        storage=storage, issuer=issuer, sandbox=sandbox, censor=censor
    )

    binder.bind(StorageRepository, storage)
    binder.bind(ToolRegistry, registry)
    binder.bind(PiiCensor, censor)
    binder.bind(CredentialIssuer, issuer)
    binder.bind(BackendSupervisor, supervisor)
    binder.bind(SandboxRunner, sandbox)
    binder.bind(ToolCallRouter, router)
    binder.bind(TaskOrchestrator, orchestrator)


def configure_di() -> None:
    """Bind the gateway singletons; later calls keep the first configuration."""
    inject.configure(_config, once=True)
