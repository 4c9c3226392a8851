"""
Loads the standup definitions from the YAML config file.

Example (config/standups.yaml):

    discord_log_channels: [123456789012345678]
    retry:
      attempts: 3
      base_delay: 1.0
      max_delay: 30.0
    standups:
      - name: backend-daily
        channel_id: 234567890123456789
        members: [345678901234567890, 456789012345678901]
        schedule_cron: "0 7 * * 1-5"
        summary_cron: "0 11 * * 1-5"
        timezone: Europe/Berlin
        prompts:
          - What did you do yesterday?
"""
import datetime
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple

import pytz
import yaml
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv

from .errors import ConfigError
from .gateway.base_gateway import RetryPolicy
from .models import StandupRun

mod_path = Path(__file__).parent

DEFAULT_CONFIG_PATH = mod_path / "../config/standups.yaml"
DEFAULT_STATE_DIR = mod_path / "../state"

DEFAULT_PROMPTS = (
    "What did you complete yesterday?",
    "What will you work on today?",
    "Are there any blockers or issues?",
)


@dataclass(frozen=True)
class StandupRunDefinition:
    name: str
    channel: str
    members: Tuple[str, ...]
    schedule_cron: str
    summary_cron: str
    prompts: Tuple[str, ...] = DEFAULT_PROMPTS
    timezone: str = "UTC"

    @property
    def tz(self):
        return pytz.timezone(self.timezone)

    def schedule_trigger(self) -> CronTrigger:
        return CronTrigger.from_crontab(self.schedule_cron, timezone=self.tz)

    def summary_trigger(self) -> CronTrigger:
        return CronTrigger.from_crontab(self.summary_cron, timezone=self.tz)

    def new_run(self, now: datetime.datetime = None) -> StandupRun:
        """Build the run for the cycle containing `now`. Runs of the same day share their id."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        local_date = now.astimezone(self.tz).date()
        return StandupRun(run_id=f"{self.name}-{local_date.isoformat()}", channel=self.channel,
                          members=self.members, prompts=self.prompts, name=self.name, created_at=now,
                          local_date=local_date)


@dataclass
class BotConfig:
    standups: List[StandupRunDefinition]
    log_channels: List[int] = field(default_factory=list)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    state_dir: Path = DEFAULT_STATE_DIR


def parse_standup(entry: dict) -> StandupRunDefinition:
    """Validate one standup entry of the config file.

    :raises ConfigError: if a field is missing or invalid.
    """
    if not isinstance(entry, dict):
        raise ConfigError(f"Standup entry must be a mapping, got {entry!r}")
    missing = [k for k in ("name", "channel_id", "members", "schedule_cron", "summary_cron") if not entry.get(k)]
    if missing:
        raise ConfigError(f"Standup entry {entry.get('name', '?')} is missing {', '.join(missing)}")

    members = [str(m) for m in entry["members"]]
    if len(set(members)) != len(members):
        raise ConfigError(f"Standup {entry['name']} lists a member twice")

    prompts = entry.get("prompts") or DEFAULT_PROMPTS
    if not all(isinstance(p, str) and p.strip() for p in prompts):
        raise ConfigError(f"Standup {entry['name']} has an empty prompt")

    timezone = entry.get("timezone", "UTC")
    if timezone not in pytz.all_timezones_set:
        raise ConfigError(f"Standup {entry['name']} has an unknown timezone '{timezone}'")

    definition = StandupRunDefinition(
        name=str(entry["name"]),
        channel=str(entry["channel_id"]),
        members=tuple(members),
        schedule_cron=str(entry["schedule_cron"]),
        summary_cron=str(entry["summary_cron"]),
        prompts=tuple(p.strip() for p in prompts),
        timezone=timezone,
    )
    for expression in (definition.schedule_cron, definition.summary_cron):
        try:
            CronTrigger.from_crontab(expression, timezone=definition.tz)
        except ValueError as e:
            raise ConfigError(f"Standup {definition.name} has an invalid cron '{expression}': {e}") from e
    return definition


def load_config(path=None) -> BotConfig:
    load_dotenv()
    path = Path(path or os.getenv("STANDUP_CONFIG_PATH") or DEFAULT_CONFIG_PATH)
    try:
        with open(path) as f:
            yaml_config = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read standup config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Standup config {path} is not valid YAML: {e}") from e

    standups = [parse_standup(entry) for entry in yaml_config.get("standups", [])]
    names = [s.name for s in standups]
    if len(set(names)) != len(names):
        raise ConfigError("Standup names must be unique")

    retry_config = yaml_config.get("retry", {})
    try:
        retry = RetryPolicy(**retry_config)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid retry settings {retry_config}: {e}") from e

    return BotConfig(
        standups=standups,
        log_channels=[int(c) for c in yaml_config.get("discord_log_channels", [])],
        retry=retry,
        state_dir=Path(os.getenv("STANDUP_STATE_DIR") or DEFAULT_STATE_DIR),
    )
