"""Service wiring.

``build_services`` constructs every service object once and hands back a
``GroveServices`` bundle. The server, the CLI and tests receive services
through it instead of reaching for module-level singletons.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from grove.engine.config import EngineConfig
from grove.engine.conversation import ConversationService
from grove.engine.providers.registry import ProviderRouter, build_provider_router
from grove.engine.session_rotator import SessionRotator
from grove.engine.summarizer import BranchSummarizer
from grove.engine.tool_guard import Assessment
from grove.engine.tools import LocalToolExecutor, ToolCallContext
from grove.engine.yaml_config import GroveConfig, load_yaml_config
from grove.shared.services.database import Database
from grove.shared.services.event_log import EventLog
from grove.shared.services.job_queue import JobQueue
from grove.shared.services.message_store import MessageStore
from grove.shared.services.preferences import UserPreferences
from grove.shared.services.session_continuity import SessionContinuityMap
from grove.shared.services.tree_store import TreeStore

logger = logging.getLogger(__name__)


@dataclass
class GroveServices:
    """Everything a front end needs, built once per process."""

    config: GroveConfig
    db: Database
    trees: TreeStore
    messages: MessageStore
    continuity: SessionContinuityMap
    event_log: EventLog
    jobs: JobQueue
    tools: LocalToolExecutor
    preferences: UserPreferences
    router: ProviderRouter
    conversations: ConversationService
    summarizer: BranchSummarizer
    rotator: SessionRotator | None

    @property
    def engine(self) -> EngineConfig:
        return self.config.engine

    async def shutdown(self) -> None:
        await self.router.shutdown_all()
        await self.jobs.shutdown()
        logger.info("Grove services shut down")


async def approve_all(assessment: Assessment, context: ToolCallContext) -> bool:
    logger.warning(
        "Auto-approving %s tool call session=%s: %s",
        assessment.level.name.lower(), context.session_id, assessment.reason,
    )
    return True


def build_services(
    config_path: str | Path | None = None,
    engine: EngineConfig | None = None,
) -> GroveServices:
    """Load configuration and construct the service graph."""
    config = load_yaml_config(config_path, engine=engine)
    engine = config.engine

    db = Database(engine.db_path)
    trees = TreeStore(db)
    messages = MessageStore(db)
    continuity = SessionContinuityMap(db)
    event_log = EventLog(db)
    event_log.prune(engine.event_retention_days)
    jobs = JobQueue(
        db,
        shell=engine.job_shell,
        output_cap=engine.job_output_cap,
        extra_path_dirs=engine.extra_path_dirs,
    )
    tools = LocalToolExecutor(
        job_queue=jobs,
        extra_path_dirs=engine.extra_path_dirs,
        approver=approve_all if engine.tool_auto_approve else None,
    )

    preferences_path = Path(engine.preferences_path).expanduser()
    preferences = UserPreferences.load(preferences_path)
    router = build_provider_router(
        config.providers,
        engine=engine,
        db=db,
        message_store=messages,
        continuity=continuity,
        tool_executor=tools,
        preferences=preferences,
        preferences_path=preferences_path,
    )
    summarizer = BranchSummarizer(
        messages,
        command=engine.cli_command,
        model=engine.summary_model,
        permission_flag=engine.cli_permission_flag,
        extra_path_dirs=engine.extra_path_dirs,
    )
    rotator = None
    if engine.session_rotation:
        rotator = SessionRotator(db, messages, continuity, summarizer, event_log=event_log)
    conversations = ConversationService(
        trees,
        messages,
        router,
        event_log=event_log,
        default_model=engine.default_model,
        summarizer=summarizer,
        rotator=rotator,
    )
    logger.info(
        "Grove services ready db=%s providers=%s active=%s",
        db.path,
        ",".join(router.list_ids()) or "<none>",
        router.active_provider.identifier if router.active_provider else "<none>",
    )
    return GroveServices(
        config=config,
        db=db,
        trees=trees,
        messages=messages,
        continuity=continuity,
        event_log=event_log,
        jobs=jobs,
        tools=tools,
        preferences=preferences,
        router=router,
        conversations=conversations,
        summarizer=summarizer,
        rotator=rotator,
    )
