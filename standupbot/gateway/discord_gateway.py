import logging
from typing import Dict, Optional

import discord

from ..errors import TransportError
from ..events import ACTION_ANSWER, KNOWN_ACTIONS, MAX_ANSWER_LENGTH
from ..models import MessageReference
from .base_gateway import MessageContent, MessagingGateway

logger = logging.getLogger(__name__)

BUTTON_STYLES = {
    "primary": discord.ButtonStyle.primary,
    "secondary": discord.ButtonStyle.secondary,
    "success": discord.ButtonStyle.success,
    "danger": discord.ButtonStyle.danger,
}

# 429 and server errors are worth another try, everything else will fail the same way again
RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _transport_error(action: str, error: discord.HTTPException) -> TransportError:
    return TransportError(f"{action} failed with {error.status}: {error.text}",
                          retryable=error.status in RETRYABLE_STATUS)


def build_view(content: MessageContent) -> Optional[discord.ui.View]:
    """Buttons of a message. Clicks are picked up by on_interaction, the buttons carry no callbacks."""
    if not content.interactive:
        return None
    view = discord.ui.View(timeout=None)
    for action in content.actions:
        view.add_item(discord.ui.Button(label=action.label, custom_id=action.action_id,
                                        style=BUTTON_STYLES.get(action.style, discord.ButtonStyle.primary)))
    return view


class AnswerModal(discord.ui.Modal, title="Standup"):
    answer = discord.ui.TextInput(label="Your answer", style=discord.TextStyle.paragraph,
                                  max_length=MAX_ANSWER_LENGTH, custom_id="standup:answer_text")

    def __init__(self, question: str):
        super().__init__(custom_id=ACTION_ANSWER, timeout=None)
        self.answer.placeholder = question[:100]


def _modal_value(data: dict) -> Optional[str]:
    for row in data.get("components", []):
        # action rows hold a list of components, label rows a single one
        children = row.get("components") or [row.get("component") or {}]
        for component in children:
            if component.get("value") is not None:
                return component["value"]
    return None


class DiscordGateway(MessagingGateway):
    """MessagingGateway on top of a discord.py client. Targets are channel ids, members are user ids."""

    def __init__(self, bot: discord.Client):
        self.bot = bot
        self._dm_channels: Dict[str, str] = {}

    async def _channel(self, target: str) -> discord.abc.Messageable:
        channel = self.bot.get_channel(int(target))
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(int(target))
            except discord.HTTPException as e:
                raise _transport_error(f"Fetching channel {target}", e) from e
        return channel

    async def open_conversation(self, member_id: str) -> str:
        if member_id in self._dm_channels:
            return self._dm_channels[member_id]
        try:
            user = self.bot.get_user(int(member_id)) or await self.bot.fetch_user(int(member_id))
            dm_channel = user.dm_channel or await user.create_dm()
        except discord.HTTPException as e:
            raise _transport_error(f"Opening DM with {member_id}", e) from e
        self._dm_channels[member_id] = str(dm_channel.id)
        return self._dm_channels[member_id]

    async def post_message(self, target: str, content: MessageContent) -> MessageReference:
        channel = await self._channel(target)
        try:
            message = await channel.send(content.text, view=build_view(content))
        except discord.HTTPException as e:
            raise _transport_error(f"Sending to {target}", e) from e
        return MessageReference(channel=str(message.channel.id), ts=str(message.id))

    async def update_message(self, target: str, reference: MessageReference, content: MessageContent) -> None:
        channel = await self._channel(target)
        try:
            # view=None strips the buttons of a superseded prompt
            await channel.get_partial_message(int(reference.ts)).edit(content=content.text, view=build_view(content))
        except discord.HTTPException as e:
            raise _transport_error(f"Editing message {reference.ts}", e) from e


async def acknowledge(interaction: discord.Interaction) -> Optional[dict]:
    """
    Respond to a standup interaction and return its payload for the orchestrator.

    Every standup interaction is answered right away, even if the orchestrator
    will ignore it, so Discord does not show a failure to the member. A click
    on "Answer" is answered with the answer modal and yields no payload; the
    modal submission does.
    """
    data = interaction.data or {}
    action_id = data.get("custom_id")
    if action_id not in KNOWN_ACTIONS:
        return None

    if interaction.type == discord.InteractionType.component and action_id == ACTION_ANSWER:
        question = interaction.message.content if interaction.message else ""
        await interaction.response.send_modal(AnswerModal(question))
        return None

    await interaction.response.defer()
    payload = {
        "acting_member": str(interaction.user.id),
        "channel": str(interaction.channel_id),
        "message_ts": str(interaction.message.id) if interaction.message else None,
        "action_id": action_id,
    }
    if interaction.type == discord.InteractionType.modal_submit:
        payload["type"] = "answer"
        payload["text"] = _modal_value(data)
    else:
        payload["type"] = "button"
    return payload
