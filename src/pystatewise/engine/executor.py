"""
Action executor: performs one side-effecting action for one entity.

Supported actions:
    - send_email / send_whatsapp: render the action's template against the
      entity and hand the result to the NotificationSender
    - update_field: write one whitelisted field of the entity
    - create_task: create a follow-up Task in the entity's organization

The executor holds no mutable state. All side effects go through the store
and the sender, so one instance serves every concurrent job.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from pystatewise.channels import NotificationSender
from pystatewise.errors import (
    ChannelError,
    ForbiddenFieldUpdate,
    InvalidConfiguration,
    MissingDestination,
    MissingTemplate,
    NotFound,
)
from pystatewise.models import Action, ActionType, Channel, EntityContext, MessageTemplate, Task
from pystatewise.models.entity import coerce_field
from pystatewise.render import escape_for, render
from pystatewise.storage.base import WorkflowStore

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "Notificação"


class ActionExecutor:
    """
    Runs built-in actions against entity contexts.

    Example:
        executor = ActionExecutor(store, sender)
        await executor.execute(action, entity)
    """

    def __init__(self, store: WorkflowStore, sender: NotificationSender):
        self.store = store
        self.sender = sender

    async def execute(
        self, action: Action, entity: EntityContext, template_id: str | None = None
    ) -> None:
        """
        Execute one action.

        Args:
            action: Action to run
            entity: Entity the action applies to
            template_id: Overrides the action's template (send actions only)

        Raises:
            ValidationError: Permanent configuration or data defect
            ChannelError: The channel provider failed (retryable)
            StorageError: The store failed (retryable)
        """
        logger.debug(
            f"Executing action {action.id} ({action.action_type}) for "
            f"{entity.entity_type} {entity.entity_id}"
        )

        if action.action_type == ActionType.SEND_WHATSAPP:
            await self._send_whatsapp(action, entity, template_id)
        elif action.action_type == ActionType.SEND_EMAIL:
            await self._send_email(action, entity, template_id)
        elif action.action_type == ActionType.UPDATE_FIELD:
            await self._update_field(action, entity)
        elif action.action_type == ActionType.CREATE_TASK:
            await self._create_task(action, entity)
        else:
            raise InvalidConfiguration(f"unknown action type: {action.action_type}")

    async def _load_template(
        self, action: Action, entity: EntityContext, channel: Channel, template_id: str | None
    ) -> MessageTemplate:
        template_id = template_id or action.template_id
        if template_id is None:
            raise MissingTemplate(f"action {action.id}: {action.action_type} requires a template")

        template = await self.store.get_template(entity.organization_id, template_id)
        if template is None:
            raise NotFound("template", template_id)
        if template.channel != channel:
            raise InvalidConfiguration(
                f"template {template_id} is a {template.channel} template, "
                f"action {action.id} sends {channel}"
            )
        return template

    def _destination(self, action: Action, entity: EntityContext, chain: tuple[str, ...]) -> str:
        to_field = action.action_config.get("to_field")
        if to_field:
            value = getattr(entity, to_field, None)
            if isinstance(value, str) and value:
                return value

        destination = entity.destination(chain)
        if destination is None:
            raise MissingDestination(
                f"no {' or '.join(chain) or 'destination'} for "
                f"{entity.entity_type} {entity.entity_id}"
            )
        return destination

    async def _send_whatsapp(
        self, action: Action, entity: EntityContext, template_id: str | None
    ) -> None:
        template = await self._load_template(action, entity, Channel.WHATSAPP, template_id)
        data = entity.as_template_data()
        message = render(template.body, data, escape_for(Channel.WHATSAPP))
        phone = self._destination(action, entity, entity.phone_fields)

        logger.info(f"Sending WhatsApp to {phone} for {entity.entity_type} {entity.entity_id}")
        try:
            await self.sender.send_message(phone, message)
        except ChannelError:
            raise
        except Exception as e:
            raise ChannelError(f"failed to send WhatsApp to {phone}: {e}") from e

    async def _send_email(
        self, action: Action, entity: EntityContext, template_id: str | None
    ) -> None:
        template = await self._load_template(action, entity, Channel.EMAIL, template_id)
        data = entity.as_template_data()
        body = render(template.body, data, escape_for(Channel.EMAIL, "body"))
        subject = DEFAULT_SUBJECT
        if template.subject:
            subject = render(template.subject, data, escape_for(Channel.EMAIL, "subject"))
        email = self._destination(action, entity, entity.email_fields)

        logger.info(f"Sending email to {email}: subject={subject!r}")
        try:
            await self.sender.send_email(email, subject, body)
        except ChannelError:
            raise
        except Exception as e:
            raise ChannelError(f"failed to send email to {email}: {e}") from e

    async def _update_field(self, action: Action, entity: EntityContext) -> None:
        field = action.action_config.get("field")
        if not isinstance(field, str) or not field:
            raise InvalidConfiguration(f"action {action.id}: update_field requires 'field'")

        if field == "current_state" or field not in entity.updatable_fields:
            raise ForbiddenFieldUpdate(
                f"action {action.id}: {entity.entity_type}.{field} cannot be updated by a workflow"
            )

        try:
            value = coerce_field(type(entity), field, action.action_config.get("value"))
        except (TypeError, ValueError, ArithmeticError) as e:
            raise InvalidConfiguration(
                f"action {action.id}: invalid value for {entity.entity_type}.{field}: {e}"
            ) from e

        logger.info(
            f"Updating {entity.entity_type}.{field} = {value!r} for entity {entity.entity_id}"
        )
        updated = await self.store.update_entity_field(
            entity.organization_id, entity.entity_type, entity.entity_id, field, value
        )
        if not updated:
            raise NotFound(entity.entity_type, entity.entity_id)

    async def _create_task(self, action: Action, entity: EntityContext) -> None:
        config = action.action_config
        data = entity.as_template_data()

        title = render(config.get("title") or "", data).strip()
        if not title:
            title = f"Task for {entity.entity_type} {entity.entity_id}"

        due_at = None
        if config.get("due_in_minutes") is not None:
            try:
                due_at = datetime.now(UTC) + timedelta(minutes=int(config["due_in_minutes"]))
            except (TypeError, ValueError) as e:
                raise InvalidConfiguration(
                    f"action {action.id}: due_in_minutes must be an integer"
                ) from e

        task = Task(
            organization_id=entity.organization_id,
            entity_type=entity.entity_type,
            entity_id=entity.entity_id,
            title=title,
            description=render(config.get("description") or "", data),
            assignee_id=config.get("assignee_id") or None,
            due_at=due_at,
            source_action_id=action.id,
        )
        await self.store.create_task(task)
        logger.info(f"Created task {task.id}: {title!r} for {entity.entity_type} {entity.entity_id}")
