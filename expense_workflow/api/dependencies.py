"""
Request dependencies: the workflow system container, caller identity and
permission checks
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from ..clock import Clock, SystemClock
from ..config import WorkflowEngineConfig
from ..directory import DirectoryInterface, HttpDirectoryClient, InMemoryDirectory
from ..engine import ApprovalEngine
from ..errors import ForbiddenError
from ..identity import Actor, Permission
from ..notifications import CompositeNotifier, EscalationNotifier, LogNotifier, WebhookNotifier
from ..repository import StorageWorkflowRepository
from ..scheduler import SLAScheduler
from ..storage import StorageInterface, create_storage


class WorkflowSystem:
    """Workflow engine with all collaborators wired from configuration"""

    def __init__(
        self,
        config: WorkflowEngineConfig,
        storage: Optional[StorageInterface] = None,
        directory: Optional[DirectoryInterface] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[EscalationNotifier] = None
    ):
        self.config = config
        self.storage = storage or create_storage(config.database_url)
        self.repository = StorageWorkflowRepository(self.storage)
        self.directory = directory or self._create_directory()
        self.notifier = notifier or self._create_notifier()
        self.clock = clock or SystemClock()

        self.engine = ApprovalEngine(
            repository=self.repository,
            directory=self.directory,
            clock=self.clock,
            notifier=self.notifier,
            default_workflow_id=config.default_workflow_id,
            return_requires_resubmit=config.return_requires_resubmit
        )
        self.scheduler = SLAScheduler(self.engine, tick_seconds=config.scheduler_tick_seconds)

    def _create_directory(self) -> DirectoryInterface:
        """External directory when a URL is configured, else in-process"""
        if not self.config.directory_url:
            return InMemoryDirectory()
        return HttpDirectoryClient(
            base_url=self.config.directory_url,
            timeout=self.config.directory_timeout,
            api_key=self.config.directory_api_key or None
        )

    def _create_notifier(self) -> EscalationNotifier:
        if not self.config.escalation_webhook_url:
            return LogNotifier()
        return CompositeNotifier([
            LogNotifier(),
            WebhookNotifier(self.config.escalation_webhook_url, timeout=self.config.notification_timeout)
        ])

    def close(self) -> None:
        self.scheduler.stop()
        self.notifier.close()
        self.directory.close()
        self.storage.close()


def get_system(request: Request) -> WorkflowSystem:
    return request.app.state.system


def get_engine(system: WorkflowSystem = Depends(get_system)) -> ApprovalEngine:
    return system.engine


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_email: Optional[str] = Header(None),
    x_actor_permissions: Optional[str] = Header(None)
) -> Actor:
    """Identity asserted by the authenticating gateway"""
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")

    permissions = [p.strip() for p in (x_actor_permissions or "").split(",") if p.strip()]
    return Actor.with_permissions(x_actor_id, permissions, email=x_actor_email)


def require_permission(permission: Permission):
    """Dependency factory rejecting callers without the permission"""

    def checker(actor: Actor = Depends(get_actor)) -> Actor:
        if not actor.has_permission(permission):
            raise ForbiddenError(
                f"Missing permission: {permission.value}",
                {"permission": permission.value}
            )
        return actor

    return checker
