"""
docflow runtime - Wiring and lifecycle

Builds the engine and caller-facing services against the configured MongoDB and
manages startup/shutdown the same way for embedding applications and the
standalone worker (run.py).
"""
from contextlib import contextmanager
from typing import Iterator, NamedTuple, Optional

from .config.settings import settings
from .engine.collaborators import EntityStore, PermissionResolver
from .engine.engine import WorkflowEngine
from .repositories.mongo_client import create_indexes, close_connection
from .scheduler.expiration_scheduler import start_scheduler, stop_scheduler
from .services.definition_service import DefinitionService
from .services.workflow_service import WorkflowService
from .utils.logger import setup_logging, get_logger

logger = get_logger(__name__)


class Runtime(NamedTuple):
    engine: WorkflowEngine
    workflows: WorkflowService
    definitions: DefinitionService


def build_runtime(
    entity_store: Optional[EntityStore] = None,
    permission_resolver: Optional[PermissionResolver] = None
) -> Runtime:
    """Wire an engine and its services against the configured database"""
    engine = WorkflowEngine(entity_store=entity_store, permission_resolver=permission_resolver)
    return Runtime(
        engine=engine,
        workflows=WorkflowService(engine),
        definitions=DefinitionService(engine.registry.repo, engine.registry)
    )


@contextmanager
def runtime(
    entity_store: Optional[EntityStore] = None,
    permission_resolver: Optional[PermissionResolver] = None,
    with_scheduler: Optional[bool] = None
) -> Iterator[Runtime]:
    """
    Runtime lifespan
    
    Startup:
        - Sets up logging
        - Creates MongoDB indexes
        - Starts the approval expiration scheduler (development by default)
    
    Shutdown:
        - Stops scheduler
        - Closes database connections
    """
    setup_logging()
    logger.info("Starting docflow...")
    
    try:
        create_indexes()
    except Exception as e:
        logger.error(f"Failed to create indexes: {e}")
        raise
    
    built = build_runtime(entity_store, permission_resolver)
    
    if with_scheduler is None:
        with_scheduler = settings.is_development
    if with_scheduler:
        start_scheduler(built.engine)
    
    logger.info("docflow started")
    try:
        yield built
    finally:
        logger.info("Shutting down...")
        stop_scheduler()
        close_connection()
        logger.info("docflow shutdown complete")
