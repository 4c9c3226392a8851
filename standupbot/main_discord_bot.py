import os
from typing import Dict

import discord
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from discord import app_commands
from discord.ext import commands, tasks
from dotenv import load_dotenv

from standupbot import util_logging
from standupbot.config import StandupRunDefinition, load_config
from standupbot.errors import MalformedEventError, StateStoreError
from standupbot.events import parse_event
from standupbot.gateway.discord_gateway import DiscordGateway, acknowledge
from standupbot.orchestrator import StandupOrchestrator
from standupbot.state_store import ConversationStateStore, JsonFileCheckpoint
from standupbot.summary import ChannelSummaryPoster, LLMSummaryWriter

load_dotenv()

DISCORD_BOT_TOKEN = os.getenv("DISCORD_TOKEN")

intents = discord.Intents.default()
intents.members = True

logger = util_logging.init_module_logger("standupbot")
listener = util_logging.start_listener()

bot_config = load_config()
STANDUPS: Dict[str, StandupRunDefinition] = {s.name: s for s in bot_config.standups}

# Initialize the Discord bot
bot = commands.Bot(command_prefix="!!!!", intents=intents)

gateway = DiscordGateway(bot)
checkpoint = JsonFileCheckpoint(bot_config.state_dir)
summary_writer = LLMSummaryWriter.from_env()
scheduler = AsyncIOScheduler()

# standup name -> orchestrator of its latest run
active_runs: Dict[str, StandupOrchestrator] = {}

logger.info(f"Standup bot initialized with {len(STANDUPS)} standups.")


@util_logging.exception(__name__)
async def start_standup(definition: StandupRunDefinition):
    run = definition.new_run()
    current = active_runs.get(definition.name)
    if current is not None and not current.run_state.terminal:
        if current.run.run_id == run.run_id:
            logger.info(f"Run {run.run_id} is already in progress.")
            return
        logger.warning(f"Aborting unfinished run {current.run.run_id}")
        current.abort()

    summarizer = ChannelSummaryPoster(gateway, definition.name, writer=summary_writer, retry=bot_config.retry)
    orchestrator = StandupOrchestrator(gateway, summarizer=summarizer, retry=bot_config.retry,
                                       checkpoint=checkpoint)
    active_runs[definition.name] = orchestrator
    try:
        status = await orchestrator.begin(run)
    except StateStoreError as e:
        logger.error(f"Run {run.run_id} could not start: {e}")
        return
    logger.info(f"Run {run.run_id} is {status.state.value}, waiting on {len(status.pending)} members.")


@util_logging.exception(__name__)
async def close_standup(definition: StandupRunDefinition):
    orchestrator = active_runs.get(definition.name)
    if orchestrator is None:
        logger.info(f"No run of {definition.name} to close.")
        return
    status = await orchestrator.expire()
    logger.info(f"Run {status.run_id} closed: {status.state.value}")


@util_logging.exception(__name__)
async def resume_interrupted_runs():
    """Restart today's runs that were still waiting on members when the bot went down."""
    for definition in STANDUPS.values():
        try:
            snapshot = checkpoint.load(definition.name)
            if snapshot is None or snapshot.get("run_id") != definition.new_run().run_id:
                continue
            store = ConversationStateStore()
            store.restore(snapshot)
        except StateStoreError as e:
            logger.error(f"Cannot inspect checkpoint of {definition.name}: {e}")
            continue
        if any(not c.terminal for c in store.conversations()):
            logger.info(f"Resuming interrupted run {store.run_id}")
            await start_standup(definition)


def schedule_standups():
    for definition in STANDUPS.values():
        scheduler.add_job(start_standup, definition.schedule_trigger(), args=[definition],
                          id=f"{definition.name}:schedule", replace_existing=True)
        scheduler.add_job(close_standup, definition.summary_trigger(), args=[definition],
                          id=f"{definition.name}:summary", replace_existing=True)
        logger.info(f"Scheduled {definition.name}: prompts '{definition.schedule_cron}', "
                    f"summary '{definition.summary_cron}' ({definition.timezone})")


@bot.event
@util_logging.exception(__name__)
async def on_interaction(interaction: discord.Interaction):
    payload = await acknowledge(interaction)
    if payload is None:
        return

    try:
        event = parse_event(payload)
    except MalformedEventError as e:
        logger.warning(f"Dropping malformed interaction: {e}")
        return

    for orchestrator in list(active_runs.values()):
        if orchestrator.owns(event):
            ack = await orchestrator.handle_interaction(event)
            logger.debug(f"Interaction {event.action_id} from {event.acting_member}: {ack}")
            return
    logger.info(f"Interaction {event.action_id} from {event.acting_member} matches no live standup message.")


@bot.tree.command(name="standup_status", description="Show the state of a standup run.")
@app_commands.describe(name="Name of the standup")
async def standup_status(interaction: discord.Interaction, name: str):
    orchestrator = active_runs.get(name)
    if orchestrator is None:
        await interaction.response.send_message(f"No run of **{name}** since the bot started.", ephemeral=True)
        return
    status = orchestrator.status()
    lines = [f"**{status.run_id}**: {status.state.value}"]
    lines += [f"<@{member_id}>: {state.value}" for member_id, state in status.members.items()]
    await interaction.response.send_message("\n".join(lines), ephemeral=True)


@bot.event
@util_logging.exception(__name__)
async def on_ready():
    channel_list = [bot.get_channel(x) for x in bot_config.log_channels]
    util_logging.set_log_channels(channel_list)
    if not discord_log_worker.is_running():
        discord_log_worker.start()

    logger.info(f"Logged in as {bot.user} (ID: {bot.user.id})")

    await bot.tree.sync()

    # on_ready fires again after reconnects
    if not scheduler.running:
        schedule_standups()
        scheduler.start()
        await resume_interrupted_runs()


@tasks.loop(seconds=10)
async def discord_log_worker():
    try:
        subject, rec, discord_channels = util_logging.discord_log_queue.get_nowait()
    except util_logging.queue.Empty:
        return

    for ch in discord_channels:
        await ch.send(f"**{subject}**:\n\n{rec}"[:2000])


def main():
    # logging goes through util_logging, keep discord.py from installing its own handler
    bot.run(DISCORD_BOT_TOKEN, log_handler=None)


if __name__ == "__main__":
    main()
