"""Human input requests and interventions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from agent_tree.config import CoordinationSettings
from agent_tree.coordination.errors import InteractionStateError
from agent_tree.coordination.events import EventBus
from agent_tree.coordination.lifecycle import TaskLifecycle
from agent_tree.coordination.models import (
    EventType,
    InteractionCreate,
    InteractionKind,
    InteractionStatus,
    InteractionView,
    TaskState,
    Urgency,
)
from agent_tree.coordination.repository import TaskGraphRepository
from agent_tree.storage.common import utc_now

logger = logging.getLogger(__name__)

OPEN_STATUSES = (InteractionStatus.PENDING, InteractionStatus.ACKNOWLEDGED)


class HumanInteractionService:
    """Create, answer and expire operator interactions.

    An input request on an active task parks the task in
    ``waiting_on_human`` with the request recorded as the blocking cause;
    closing that same request resumes it.
    """

    def __init__(
        self,
        *,
        repository: TaskGraphRepository,
        lifecycle: TaskLifecycle,
        bus: EventBus,
        settings: CoordinationSettings,
    ) -> None:
        self.repository = repository
        self.lifecycle = lifecycle
        self.bus = bus
        self.settings = settings

    def request_input(  # noqa: PLR0913
        self,
        task_id: str,
        question: str,
        *,
        context: str | None = None,
        required: bool = True,
        urgency: Urgency = Urgency.NORMAL,
        block_task: bool = True,
    ) -> InteractionView:
        task = self.repository.require_task(task_id)
        interaction = self.repository.create_interaction(
            InteractionCreate(
                kind=InteractionKind.INPUT_REQUEST,
                question=question,
                task_id=task_id,
                project_id=task.project_id,
                context=context,
                required=required,
                urgency=urgency,
                expires_at=utc_now() + timedelta(hours=self.settings.human_input_timeout_hours),
            ),
        )
        self.bus.publish(
            EventType.HUMAN_INPUT_REQUESTED,
            {
                "interaction_id": interaction.interaction_id,
                "question": question,
                "required": required,
                "urgency": urgency.value,
            },
            task_id=task_id,
            parent_task_id=task.parent_id,
            project_id=task.project_id,
            priority=urgency.value,
        )
        if block_task and task.state == TaskState.ACTIVE:
            self.lifecycle.wait_on_human(task_id, interaction_id=interaction.interaction_id)
        logger.info(
            "Human input %s requested for task %s (required=%s)",
            interaction.interaction_id,
            task_id,
            required,
        )
        return interaction

    def raise_intervention(
        self,
        description: str,
        *,
        task_id: str | None = None,
        project_id: str | None = None,
        urgency: Urgency = Urgency.NORMAL,
    ) -> InteractionView:
        interaction = self.repository.create_interaction(
            InteractionCreate(
                kind=InteractionKind.INTERVENTION,
                question=description,
                task_id=task_id,
                project_id=project_id,
                required=True,
                urgency=urgency,
            ),
        )
        self.bus.publish(
            EventType.INTERVENTION_RAISED,
            {
                "interaction_id": interaction.interaction_id,
                "description": description,
                "urgency": urgency.value,
            },
            task_id=task_id,
            project_id=project_id,
            priority=urgency.value,
        )
        logger.warning("Intervention raised (%s): %s", urgency.value, description)
        return interaction

    def answer(
        self,
        interaction_id: str,
        response: str,
        *,
        responded_by: str = "operator",
    ) -> InteractionView:
        self._require(interaction_id, kind=InteractionKind.INPUT_REQUEST)
        interaction = self._update(
            interaction_id,
            expected=(InteractionStatus.PENDING,),
            status=InteractionStatus.ANSWERED,
            response=response,
            responded_by=responded_by,
        )
        self._publish(EventType.HUMAN_INPUT_ANSWERED, interaction)
        self._resume_blocked(interaction, response=response)
        return interaction

    def ignore(self, interaction_id: str, *, responded_by: str = "operator") -> InteractionView:
        """Close an optional input request without an answer."""

        current = self._require(interaction_id, kind=InteractionKind.INPUT_REQUEST)
        if current.required:
            raise InteractionStateError(
                f"Interaction {interaction_id} is required and cannot be ignored",
            )
        interaction = self._update(
            interaction_id,
            expected=(InteractionStatus.PENDING,),
            status=InteractionStatus.IGNORED,
            responded_by=responded_by,
        )
        self._publish(EventType.HUMAN_INPUT_IGNORED, interaction)
        self._resume_blocked(interaction, response=None)
        return interaction

    def acknowledge(
        self,
        interaction_id: str,
        *,
        responded_by: str = "operator",
    ) -> InteractionView:
        self._require(interaction_id, kind=InteractionKind.INTERVENTION)
        interaction = self._update(
            interaction_id,
            expected=(InteractionStatus.PENDING,),
            status=InteractionStatus.ACKNOWLEDGED,
            responded_by=responded_by,
        )
        self._publish(EventType.INTERVENTION_ACKNOWLEDGED, interaction)
        return interaction

    def resolve(
        self,
        interaction_id: str,
        resolution: str,
        *,
        responded_by: str = "operator",
    ) -> InteractionView:
        self._require(interaction_id, kind=InteractionKind.INTERVENTION)
        interaction = self._update(
            interaction_id,
            expected=OPEN_STATUSES,
            status=InteractionStatus.RESOLVED,
            response=resolution,
            responded_by=responded_by,
        )
        self._publish(EventType.INTERVENTION_CLOSED, interaction)
        self._resume_blocked(interaction, response=resolution)
        return interaction

    def dismiss(self, interaction_id: str, *, responded_by: str = "operator") -> InteractionView:
        self._require(interaction_id, kind=InteractionKind.INTERVENTION)
        interaction = self._update(
            interaction_id,
            expected=OPEN_STATUSES,
            status=InteractionStatus.DISMISSED,
            responded_by=responded_by,
        )
        self._publish(EventType.INTERVENTION_CLOSED, interaction)
        self._resume_blocked(interaction, response=None)
        return interaction

    def expire_overdue(self, *, now: datetime | None = None) -> list[InteractionView]:
        """Expire pending requests past their deadline.

        An expired required request escalates to a high-urgency intervention
        which becomes the task's new blocking cause.
        """

        expired: list[InteractionView] = []
        for candidate in self.repository.list_expired_interactions(now=now or utc_now()):
            interaction = self.repository.update_interaction(
                candidate.interaction_id,
                expected=(InteractionStatus.PENDING,),
                status=InteractionStatus.EXPIRED,
            )
            if interaction is None:
                continue
            expired.append(interaction)
            self._publish(EventType.HUMAN_INPUT_EXPIRED, interaction)
            if interaction.required and interaction.kind == InteractionKind.INPUT_REQUEST:
                self._escalate(interaction)
            else:
                self._resume_blocked(interaction, response=None)
        if expired:
            logger.info("Expired %d overdue human interactions", len(expired))
        return expired

    def _escalate(self, interaction: InteractionView) -> None:
        escalation = self.raise_intervention(
            f"Required input was not answered in time: {interaction.question}",
            task_id=interaction.task_id,
            project_id=interaction.project_id,
            urgency=Urgency.HIGH,
        )
        if interaction.task_id is None:
            return
        task = self.repository.get_task(interaction.task_id)
        if task is not None and task.waiting_for_interaction_id == interaction.interaction_id:
            self.repository.update_task(
                task.task_id,
                metadata_updates={"waiting_for_interaction_id": escalation.interaction_id},
            )

    def _resume_blocked(self, interaction: InteractionView, *, response: str | None) -> None:
        if interaction.task_id is None:
            return
        self.lifecycle.resume(
            interaction.task_id,
            interaction_id=interaction.interaction_id,
            response=response,
        )

    def _require(self, interaction_id: str, *, kind: InteractionKind) -> InteractionView:
        interaction = self.repository.get_interaction(interaction_id)
        if interaction is None:
            raise InteractionStateError(f"Interaction not found: {interaction_id}")
        if interaction.kind != kind:
            raise InteractionStateError(
                f"Interaction {interaction_id} is {interaction.kind.value}, expected {kind.value}",
            )
        return interaction

    def _update(  # noqa: PLR0913
        self,
        interaction_id: str,
        *,
        expected: tuple[InteractionStatus, ...],
        status: InteractionStatus,
        response: str | None = None,
        responded_by: str | None = None,
    ) -> InteractionView:
        interaction = self.repository.update_interaction(
            interaction_id,
            expected=expected,
            status=status,
            response=response,
            responded_by=responded_by,
        )
        if interaction is None:
            current = self.repository.get_interaction(interaction_id)
            state = current.status.value if current is not None else "missing"
            raise InteractionStateError(
                f"Cannot move interaction {interaction_id} from {state} to {status.value}",
            )
        return interaction

    def _publish(self, event_type: EventType, interaction: InteractionView) -> None:
        self.bus.publish(
            event_type,
            {
                "interaction_id": interaction.interaction_id,
                "status": interaction.status.value,
                "response": interaction.response,
            },
            task_id=interaction.task_id,
            project_id=interaction.project_id,
            priority=interaction.urgency.value,
        )
